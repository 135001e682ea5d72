"""
Health check and status endpoints.

This module contains endpoints for:
- Webhook health checks
- Recent engagement activity
"""

import logging
from datetime import datetime, timedelta
from flask import jsonify
from sqlalchemy import text

from followup_engine.models import db, EngagementEvent
from followup_engine.routes.webhook import webhook_bp

logger = logging.getLogger(__name__)


@webhook_bp.route('/health', methods=['GET'])
def webhook_health():
    """Health check endpoint for webhooks."""
    try:
        # Check database connectivity
        db.session.execute(text('SELECT 1'))

        recent_events = EngagementEvent.query.filter(
            EngagementEvent.received_at >= datetime.utcnow() - timedelta(hours=24)
        ).count()

        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'database': 'connected',
            'recent_engagement_events_24h': recent_events,
            'message': 'Webhook system is operational'
        }), 200

    except Exception as e:
        logger.error(f"Health check failed: {str(e)}")
        return jsonify({
            'status': 'unhealthy',
            'timestamp': datetime.utcnow().isoformat(),
            'error': str(e),
            'message': 'Webhook system is experiencing issues'
        }), 500
