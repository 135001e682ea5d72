"""
Engagement webhook handlers.

This module contains the engagement event intake:
- Signature verification
- Native events: ``{dispatchRef, eventType, timestamp}``, single or a list
- Resend events: ``{type, created_at, data: {email_id}}``

Events may be delivered more than once; the tracker records each
(dispatchRef, eventType, timestamp) only once.
"""

import hashlib
import hmac
import logging
from flask import request, jsonify, current_app

from followup_engine.exceptions import FollowUpError, ValidationError
from followup_engine.models import db
from followup_engine.services.sequence_engine import EngagementTracker
from followup_engine.utils.error_handling import (
    create_error_response,
    handle_exception,
    handle_unauthorized_error,
    handle_validation_error
)
from followup_engine.routes.webhook import webhook_bp

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'X-Webhook-Signature'


def verify_webhook_signature(payload_body, signature_header, secret):
    """Verify a ``sha256=<hex>`` HMAC signature of the raw request body."""
    if not signature_header or not secret:
        return False

    expected_signature = hmac.new(
        secret.encode('utf-8'),
        payload_body,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(f"sha256={expected_signature}", signature_header)


def normalize_engagement_payload(item):
    """Return (dispatch_ref, event_type, timestamp) for a native or Resend event."""
    if not isinstance(item, dict):
        raise ValidationError("Engagement event must be an object")

    if 'data' in item and 'type' in item:
        data = item.get('data') or {}
        return data.get('email_id'), item.get('type'), item.get('created_at') or data.get('created_at')

    return (
        item.get('dispatchRef') or item.get('dispatch_ref'),
        item.get('eventType') or item.get('event_type'),
        item.get('timestamp')
    )


@webhook_bp.route('/engagement', methods=['POST'])
def engagement_webhook():
    """Ingest delivery and engagement events for dispatched steps."""
    try:
        secret = current_app.config.get('ENGAGEMENT_WEBHOOK_SECRET')
        if secret:
            signature = request.headers.get(SIGNATURE_HEADER)
            if not verify_webhook_signature(request.get_data(), signature, secret):
                logger.warning("Engagement webhook rejected: invalid signature")
                return handle_unauthorized_error("Invalid webhook signature")

        payload = request.get_json(silent=True)
        if payload is None:
            return handle_validation_error("Request body must be JSON")

        items = payload if isinstance(payload, list) else [payload]
        if not items:
            return handle_validation_error("No engagement events supplied")

        tracker = EngagementTracker()
        results = []
        for item in items:
            try:
                dispatch_ref, event_type, timestamp = normalize_engagement_payload(item)
                outcome = tracker.on_event(dispatch_ref, event_type, timestamp, payload=item)
                results.append(outcome.to_dict())
            except ValidationError as e:
                db.session.rollback()
                logger.warning(f"Invalid engagement event skipped: {e.message}")
                results.append({'status': 'invalid', 'error': e.message})

        if len(items) == 1 and results[0]['status'] == 'invalid':
            return create_error_response('WEBHOOK_ERROR', results[0]['error'])

        counts = {}
        for result in results:
            counts[result['status']] = counts.get(result['status'], 0) + 1

        return jsonify({
            'message': 'Engagement events processed',
            'received': len(items),
            'counts': counts,
            'results': results
        }), 200

    except FollowUpError as e:
        db.session.rollback()
        return create_error_response(e.code, e.message, e.details or None)
    except Exception as e:
        db.session.rollback()
        return handle_exception(e, "engagement webhook processing")
