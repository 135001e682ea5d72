import uuid
from datetime import datetime
from followup_engine.extensions import db


class ExecutionStatus:
    PENDING = 'PENDING'
    ACTIVE = 'ACTIVE'
    PAUSED = 'PAUSED'
    COMPLETED = 'COMPLETED'
    STOPPED = 'STOPPED'
    FAILED = 'FAILED'

    # At most one execution per (sequence, invoice) may be in one of these
    LIVE = (PENDING, ACTIVE, PAUSED)
    # Statuses the scheduler polls
    RUNNABLE = (PENDING, ACTIVE)
    FINAL = (COMPLETED, STOPPED, FAILED)


_LIVE_PREDICATE = db.text("status IN ('PENDING', 'ACTIVE', 'PAUSED')")


class Execution(db.Model):
    __tablename__ = 'executions'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = db.Column(db.String(36), db.ForeignKey('companies.id'), nullable=False)
    sequence_id = db.Column(db.String(36), db.ForeignKey('sequences.id'), nullable=False)
    invoice_id = db.Column(db.String(36), db.ForeignKey('invoices.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ExecutionStatus.PENDING)
    current_step_index = db.Column(db.Integer, nullable=False, default=0)
    total_steps = db.Column(db.Integer, nullable=False, default=0)
    next_run_at = db.Column(db.DateTime, nullable=True)
    started_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)
    stopped_at = db.Column(db.DateTime, nullable=True)
    stop_reason = db.Column(db.String(500), nullable=True)
    pending_stop_reason = db.Column(db.String(255), nullable=True)  # set by engagement signals, consumed by the next tick
    trigger_type = db.Column(db.String(50), nullable=False, default='MANUAL')
    trigger_operator = db.Column(db.String(20), nullable=True)
    trigger_value = db.Column(db.String(255), nullable=True)
    sequence_revision = db.Column(db.Integer, nullable=False, default=1)
    compliance_deferrals = db.Column(db.Integer, nullable=False, default=0)
    locked_by = db.Column(db.String(100), nullable=True)
    locked_until = db.Column(db.DateTime, nullable=True)
    version = db.Column(db.Integer, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    step_logs = db.relationship('StepLog', backref='execution', lazy=True, order_by='StepLog.step_number')

    __mapper_args__ = {'version_id_col': version}

    __table_args__ = (
        db.Index(
            'uq_executions_live_pair', 'sequence_id', 'invoice_id', unique=True,
            sqlite_where=_LIVE_PREDICATE, postgresql_where=_LIVE_PREDICATE
        ),
        db.Index('ix_executions_due', 'status', 'next_run_at'),
    )

    @property
    def is_final(self):
        return self.status in ExecutionStatus.FINAL

    @property
    def is_live(self):
        return self.status in ExecutionStatus.LIVE

    def lease_held(self, now=None):
        now = now or datetime.utcnow()
        return self.locked_until is not None and self.locked_until > now

    def to_dict(self):
        return {
            'id': str(self.id),
            'company_id': str(self.company_id),
            'sequence_id': str(self.sequence_id),
            'invoice_id': str(self.invoice_id),
            'status': self.status,
            'current_step_index': self.current_step_index,
            'total_steps': self.total_steps,
            'next_run_at': self.next_run_at.isoformat() if self.next_run_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'stopped_at': self.stopped_at.isoformat() if self.stopped_at else None,
            'stop_reason': self.stop_reason,
            'pending_stop_reason': self.pending_stop_reason,
            'trigger': {
                'type': self.trigger_type,
                'operator': self.trigger_operator,
                'value': self.trigger_value
            },
            'sequence_revision': self.sequence_revision,
            'compliance_deferrals': self.compliance_deferrals,
            'version': self.version
        }

    def __repr__(self):
        return f'<Execution {self.id} {self.status} step {self.current_step_index}/{self.total_steps}>'
