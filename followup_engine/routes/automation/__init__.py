"""
Automation routes package.

This package contains organized automation functionality:
- scheduler_control.py: Scheduler status, start, stop and single-poll endpoints
"""

from flask import Blueprint

# Create the main automation blueprint
automation_bp = Blueprint('automation', __name__)

# Import all route modules to register them
from . import scheduler_control

# Export the blueprint
__all__ = ['automation_bp']
