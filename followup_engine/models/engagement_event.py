from datetime import datetime
from followup_engine.extensions import db
from sqlalchemy import JSON
import uuid


class EngagementEvent(db.Model):
    """Raw engagement signal; the unique key makes redelivered events no-ops."""
    __tablename__ = 'engagement_events'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    dispatch_ref = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(50), nullable=False)
    occurred_at = db.Column(db.DateTime, nullable=False)
    step_log_id = db.Column(db.String(36), db.ForeignKey('step_logs.id'), nullable=True)
    payload = db.Column(JSON, nullable=True)
    received_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('dispatch_ref', 'event_type', 'occurred_at', name='uq_engagement_events_signal'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'dispatch_ref': self.dispatch_ref,
            'event_type': self.event_type,
            'occurred_at': self.occurred_at.isoformat() if self.occurred_at else None,
            'step_log_id': self.step_log_id,
            'payload': self.payload,
            'received_at': self.received_at.isoformat() if self.received_at else None
        }
