"""
Testing package for the Follow-up Engine.

This package contains:
- Unit tests for the business window, compliance gate and sequence engine
- Scheduler, trigger and engagement tests against an in-memory database
- Integration tests for API endpoints
- Shared fixtures in conftest.py
"""
