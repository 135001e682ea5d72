"""
Delivery and engagement event tracking.

This module contains functionality for:
- Normalizing provider event names (including Resend webhook types)
- Ignoring redelivered events
- Annotating the StepLog a dispatch reference belongs to
- Raising a pending stop on the execution for hard signals

Soft signals (delivered, open, click, soft bounce) only annotate. Hard signals
(hard bounce, spam complaint, explicit reply) mark the execution so the next
scheduler tick stops it; they never stop it directly.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import pytz
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from followup_engine.extensions import db
from followup_engine.exceptions import SchedulerConflict, ValidationError
from followup_engine.models import DeliveryStatus, EmailSuppression, EngagementEvent, StepLog

logger = logging.getLogger(__name__)

DELIVERED = 'delivered'
OPEN = 'open'
CLICK = 'click'
SOFT_BOUNCE = 'soft_bounce'
HARD_BOUNCE = 'hard_bounce'
SPAM_COMPLAINT = 'spam_complaint'
EXPLICIT_REPLY = 'explicit_reply'

STOP_SIGNALS = (HARD_BOUNCE, SPAM_COMPLAINT, EXPLICIT_REPLY)
SUPPRESSING_SIGNALS = (HARD_BOUNCE, SPAM_COMPLAINT)

EVENT_ALIASES = {
    'delivered': DELIVERED,
    'email.delivered': DELIVERED,
    'open': OPEN,
    'opened': OPEN,
    'email.opened': OPEN,
    'click': CLICK,
    'clicked': CLICK,
    'email.clicked': CLICK,
    'soft_bounce': SOFT_BOUNCE,
    'email.delivery_delayed': SOFT_BOUNCE,
    'hard_bounce': HARD_BOUNCE,
    'bounced': HARD_BOUNCE,
    'email.bounced': HARD_BOUNCE,
    'spam_complaint': SPAM_COMPLAINT,
    'complaint': SPAM_COMPLAINT,
    'complained': SPAM_COMPLAINT,
    'email.complained': SPAM_COMPLAINT,
    'explicit_reply': EXPLICIT_REPLY,
    'reply': EXPLICIT_REPLY,
    'replied': EXPLICIT_REPLY,
}

MAX_CAS_RETRIES = 3


@dataclass
class EngagementOutcome:
    status: str  # recorded, duplicate, unknown_ref
    event_type: str
    execution_id: Optional[str] = None
    stop_requested: bool = False

    def to_dict(self):
        return {
            'status': self.status,
            'event_type': self.event_type,
            'execution_id': self.execution_id,
            'stop_requested': self.stop_requested
        }


def normalize_event_type(event_type: str) -> str:
    key = (event_type or '').strip().lower().replace('-', '_').replace(' ', '_')
    if key not in EVENT_ALIASES:
        raise ValidationError(f"Unknown engagement event type '{event_type}'")
    return EVENT_ALIASES[key]


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 string, epoch seconds or datetime into naive UTC."""
    if value is None or value == '':
        raise ValidationError("Event timestamp is required")
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return datetime.utcfromtimestamp(value)
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid event timestamp '{value}'")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(pytz.UTC).replace(tzinfo=None)
    return parsed


class EngagementTracker:
    """Ingests delivery and engagement events for dispatched steps."""

    def on_event(self, dispatch_ref: str, event_type: str, timestamp,
                 payload: Optional[Dict[str, Any]] = None) -> EngagementOutcome:
        if not dispatch_ref:
            raise ValidationError("dispatchRef is required")
        # timestamp is part of the dedup key
        normalized = normalize_event_type(event_type)
        occurred_at = parse_timestamp(timestamp)

        for attempt in range(MAX_CAS_RETRIES):
            step_log = StepLog.query.filter_by(dispatch_ref=dispatch_ref).first()
            if not step_log:
                logger.warning(f"Engagement event {normalized} for unknown dispatch ref {dispatch_ref}")
                return EngagementOutcome(status='unknown_ref', event_type=normalized)

            db.session.add(EngagementEvent(
                dispatch_ref=dispatch_ref,
                event_type=normalized,
                occurred_at=occurred_at,
                step_log_id=step_log.id,
                payload=payload
            ))
            try:
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                logger.info(f"Duplicate engagement event {normalized} for {dispatch_ref} at {occurred_at} ignored")
                return EngagementOutcome(status='duplicate', event_type=normalized, execution_id=step_log.execution_id)

            self._annotate(step_log, normalized, occurred_at)
            stop_requested = self._request_stop(step_log, normalized)
            if normalized in SUPPRESSING_SIGNALS:
                self._suppress_recipient(step_log.recipient, normalized)

            try:
                db.session.commit()
            except StaleDataError:
                db.session.rollback()
                logger.info(f"Version conflict recording {normalized} for {dispatch_ref}, retrying ({attempt + 1})")
                continue

            logger.info(f"Recorded {normalized} for dispatch {dispatch_ref} (execution {step_log.execution_id})")
            return EngagementOutcome(
                status='recorded',
                event_type=normalized,
                execution_id=step_log.execution_id,
                stop_requested=stop_requested
            )

        raise SchedulerConflict(f"Could not record engagement event for {dispatch_ref}")

    def _annotate(self, step_log: StepLog, event_type: str, occurred_at: datetime):
        if event_type == DELIVERED:
            if step_log.delivery_status in (DeliveryStatus.PENDING, DeliveryStatus.SENT, DeliveryStatus.SOFT_BOUNCED):
                step_log.delivery_status = DeliveryStatus.DELIVERED
        elif event_type == OPEN:
            step_log.opened_at = step_log.opened_at or occurred_at
        elif event_type == CLICK:
            step_log.clicked_at = step_log.clicked_at or occurred_at
            step_log.opened_at = step_log.opened_at or occurred_at
        elif event_type == SOFT_BOUNCE:
            if step_log.delivery_status in (DeliveryStatus.PENDING, DeliveryStatus.SENT):
                step_log.delivery_status = DeliveryStatus.SOFT_BOUNCED
        elif event_type == HARD_BOUNCE:
            step_log.delivery_status = DeliveryStatus.HARD_BOUNCED
            step_log.bounced_at = step_log.bounced_at or occurred_at
        elif event_type == SPAM_COMPLAINT:
            step_log.delivery_status = DeliveryStatus.COMPLAINED
        elif event_type == EXPLICIT_REPLY:
            step_log.delivery_status = DeliveryStatus.REPLIED
            step_log.replied_at = step_log.replied_at or occurred_at

    def _request_stop(self, step_log: StepLog, event_type: str) -> bool:
        if event_type not in STOP_SIGNALS:
            return False
        execution = step_log.execution
        if execution.is_final or execution.pending_stop_reason:
            return False
        execution.pending_stop_reason = f"engagement:{event_type}"
        return True

    def _suppress_recipient(self, recipient: Optional[str], event_type: str):
        if not recipient:
            return
        email = recipient.strip().lower()
        if not EmailSuppression.query.filter_by(email=email).first():
            db.session.add(EmailSuppression(email=email, reason=event_type))
            logger.info(f"Suppressed {email} after {event_type}")
