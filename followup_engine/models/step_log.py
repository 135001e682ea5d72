import uuid
from datetime import datetime
from followup_engine.extensions import db


class DeliveryStatus:
    PENDING = 'PENDING'
    SENT = 'SENT'
    DELIVERED = 'DELIVERED'
    SOFT_BOUNCED = 'SOFT_BOUNCED'
    HARD_BOUNCED = 'HARD_BOUNCED'
    COMPLAINED = 'COMPLAINED'
    REPLIED = 'REPLIED'
    FAILED = 'FAILED'


class StepLog(db.Model):
    """One row per dispatched step; retries update the row instead of adding another."""
    __tablename__ = 'step_logs'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id = db.Column(db.String(36), db.ForeignKey('executions.id'), nullable=False)
    step_number = db.Column(db.Integer, nullable=False)
    dispatch_token = db.Column(db.String(36), nullable=False, unique=True)
    dispatch_ref = db.Column(db.String(255), nullable=True, index=True)  # provider message id
    recipient = db.Column(db.String(255), nullable=True)
    subject = db.Column(db.String(1000), nullable=True)  # snapshot of what was sent
    body = db.Column(db.Text, nullable=True)
    language = db.Column(db.String(20), nullable=True)
    delivery_status = db.Column(db.String(20), nullable=False, default=DeliveryStatus.PENDING)
    sent_at = db.Column(db.DateTime, nullable=True)
    opened_at = db.Column(db.DateTime, nullable=True)
    clicked_at = db.Column(db.DateTime, nullable=True)
    replied_at = db.Column(db.DateTime, nullable=True)
    bounced_at = db.Column(db.DateTime, nullable=True)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    last_error_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('execution_id', 'step_number', name='uq_step_logs_execution_step'),
    )

    @property
    def dispatched(self):
        return self.dispatch_ref is not None

    def to_dict(self):
        return {
            'id': str(self.id),
            'execution_id': str(self.execution_id),
            'step_number': self.step_number,
            'dispatch_token': self.dispatch_token,
            'dispatch_ref': self.dispatch_ref,
            'recipient': self.recipient,
            'subject': self.subject,
            'body': self.body,
            'language': self.language,
            'delivery_status': self.delivery_status,
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
            'opened_at': self.opened_at.isoformat() if self.opened_at else None,
            'clicked_at': self.clicked_at.isoformat() if self.clicked_at else None,
            'replied_at': self.replied_at.isoformat() if self.replied_at else None,
            'bounced_at': self.bounced_at.isoformat() if self.bounced_at else None,
            'attempt_count': self.attempt_count,
            'last_error_reason': self.last_error_reason
        }

    def __repr__(self):
        return f'<StepLog step {self.step_number} of Execution {self.execution_id} ({self.delivery_status})>'
