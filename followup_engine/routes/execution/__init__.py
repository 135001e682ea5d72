"""
Execution routes package.

This package contains the execution control endpoints:
- control.py: Starting, stopping, pausing and resuming a sequence for an invoice
- status.py: Execution status and step history
"""

from flask import Blueprint

# Create the main execution blueprint
execution_bp = Blueprint('execution', __name__)

# Import all route modules to register them
from . import control
from . import status

# Export the blueprint
__all__ = ['execution_bp']
