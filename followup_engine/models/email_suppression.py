import uuid
from datetime import datetime
from followup_engine.extensions import db


class EmailSuppression(db.Model):
    __tablename__ = 'email_suppressions'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = db.Column(db.String(255), nullable=False, unique=True)
    reason = db.Column(db.String(50), nullable=False, default='unsubscribed')  # unsubscribed, hard_bounce, spam_complaint
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @classmethod
    def is_suppressed(cls, email):
        if not email:
            return False
        return cls.query.filter_by(email=email.strip().lower()).first() is not None

    def to_dict(self):
        return {
            'id': str(self.id),
            'email': self.email,
            'reason': self.reason,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

    def __repr__(self):
        return f'<EmailSuppression {self.email} ({self.reason})>'
