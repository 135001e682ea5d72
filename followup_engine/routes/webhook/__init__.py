"""
Webhook routes package.

This package contains the inbound webhook endpoints:
- handlers.py: Delivery and engagement event intake (native and Resend payloads)
- health.py: Health check and recent engagement activity
"""

from flask import Blueprint

# Create the main webhook blueprint
webhook_bp = Blueprint('webhook', __name__)

# Import all route modules to register them
from . import handlers
from . import health

# Export the blueprint
__all__ = ['webhook_bp']
