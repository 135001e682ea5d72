"""
Sequence routes package.

This package contains organized sequence functionality:
- crud.py: Creating, reading and updating sequence definitions
- validation.py: Sequence validation, example sequence and step previews
"""

from flask import Blueprint

# Create the main sequence blueprint
sequence_bp = Blueprint('sequence', __name__)

# Import all route modules to register them
from . import crud
from . import validation

# Export the blueprint
__all__ = ['sequence_bp']
