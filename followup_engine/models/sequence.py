import uuid
from datetime import datetime
from followup_engine.extensions import db
from sqlalchemy import JSON


class StepLanguage:
    ENGLISH = 'ENGLISH'
    ARABIC = 'ARABIC'
    BOTH = 'BOTH'

    ALL = (ENGLISH, ARABIC, BOTH)


class StepTone:
    # Ordered from least to most formal
    CASUAL = 'CASUAL'
    FRIENDLY = 'FRIENDLY'
    BUSINESS = 'BUSINESS'
    FORMAL = 'FORMAL'
    VERY_FORMAL = 'VERY_FORMAL'

    ORDER = (CASUAL, FRIENDLY, BUSINESS, FORMAL, VERY_FORMAL)


class StopConditionTag:
    PAYMENT_RECEIVED = 'PAYMENT_RECEIVED'
    PARTIAL_PAYMENT = 'PARTIAL_PAYMENT'
    DISPUTE_OPENED = 'DISPUTE_OPENED'
    UNSUBSCRIBED = 'UNSUBSCRIBED'
    CUSTOMER_RESPONSE = 'CUSTOMER_RESPONSE'
    LINK_CLICKED = 'LINK_CLICKED'
    MANUAL = 'MANUAL'

    ALL = (PAYMENT_RECEIVED, PARTIAL_PAYMENT, DISPUTE_OPENED, UNSUBSCRIBED,
           CUSTOMER_RESPONSE, LINK_CLICKED, MANUAL)


class Sequence(db.Model):
    __tablename__ = 'sequences'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = db.Column(db.String(36), db.ForeignKey('companies.id'), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    revision = db.Column(db.Integer, nullable=False, default=1)  # bumped whenever steps are replaced
    trigger_conditions = db.Column(JSON, nullable=True)  # list of {type, operator, value}
    cooldown_hours = db.Column(db.Integer, nullable=False, default=24)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    steps = db.relationship('SequenceStep', backref='sequence', lazy=True, cascade='all, delete-orphan',
                            order_by='SequenceStep.step_number')
    executions = db.relationship('Execution', backref='sequence', lazy=True)

    __table_args__ = (
        db.UniqueConstraint('company_id', 'name', name='uq_sequences_company_name'),
    )

    @property
    def total_steps(self):
        return len(self.steps)

    def to_dict(self, include_steps=True):
        data = {
            'id': str(self.id),
            'company_id': str(self.company_id),
            'name': self.name,
            'description': self.description,
            'active': self.active,
            'revision': self.revision,
            'trigger_conditions': self.trigger_conditions or [],
            'cooldown_hours': self.cooldown_hours,
            'total_steps': self.total_steps,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }
        if include_steps:
            data['steps'] = [step.to_dict() for step in self.steps]
        return data

    def __repr__(self):
        return f'<Sequence {self.name} r{self.revision}>'


class SequenceStep(db.Model):
    __tablename__ = 'sequence_steps'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    sequence_id = db.Column(db.String(36), db.ForeignKey('sequences.id'), nullable=False)
    step_number = db.Column(db.Integer, nullable=False)  # 1-based
    delay_days = db.Column(db.Integer, nullable=False, default=0)  # offset from previous step's completion
    subject = db.Column(db.String(500), nullable=True)
    content = db.Column(db.Text, nullable=True)
    subject_ar = db.Column(db.String(500), nullable=True)
    content_ar = db.Column(db.Text, nullable=True)
    language = db.Column(db.String(20), nullable=False, default=StepLanguage.ENGLISH)
    tone = db.Column(db.String(20), nullable=False, default=StepTone.BUSINESS)
    stop_conditions = db.Column(JSON, nullable=True)  # list of StopConditionTag values
    step_metadata = db.Column(JSON, nullable=True)

    __table_args__ = (
        db.UniqueConstraint('sequence_id', 'step_number', name='uq_sequence_steps_number'),
    )

    def to_dict(self):
        return {
            'step_number': self.step_number,
            'delay_days': self.delay_days,
            'subject': self.subject,
            'content': self.content,
            'subject_ar': self.subject_ar,
            'content_ar': self.content_ar,
            'language': self.language,
            'tone': self.tone,
            'stop_conditions': self.stop_conditions or [],
            'metadata': self.step_metadata or {}
        }

    def __repr__(self):
        return f'<SequenceStep {self.step_number} of {self.sequence_id}>'
