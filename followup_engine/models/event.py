import uuid
from datetime import datetime
from followup_engine.extensions import db
from sqlalchemy import JSON


class Event(db.Model):
    __tablename__ = 'events'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id = db.Column(db.String(36), db.ForeignKey('executions.id'), nullable=True)
    event_type = db.Column(db.String(50), nullable=False)
    # Event types: sequence_triggered, step_dispatched, dispatch_retry_scheduled, compliance_deferred, window_deferred, execution_stopped, etc.
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    meta_json = db.Column(JSON, nullable=True)  # Additional event data, error details, etc.

    def to_dict(self):
        return {
            'id': str(self.id),
            'execution_id': str(self.execution_id) if self.execution_id else None,
            'event_type': self.event_type,
            'timestamp': self.timestamp.isoformat(),
            'meta_json': self.meta_json
        }

    def __repr__(self):
        return f'<Event {self.event_type} for Execution {self.execution_id}>'
