import uuid
from datetime import datetime
from followup_engine.extensions import db
from sqlalchemy import JSON

from followup_engine.services.business_window import BusinessWindow


def _default_working_days():
    return [0, 1, 2, 3, 4]  # Sunday-Thursday


class Company(db.Model):
    __tablename__ = 'companies'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = db.Column(db.String(255), nullable=False)
    timezone = db.Column(db.String(50), nullable=False, default='Asia/Dubai')  # IANA timezone format
    working_days = db.Column(JSON, nullable=False, default=_default_working_days)  # 0=Sunday ... 6=Saturday
    start_hour = db.Column(db.Integer, nullable=False, default=8)
    end_hour = db.Column(db.Integer, nullable=False, default=18)
    holidays = db.Column(JSON, nullable=False, default=list)  # ISO dates
    # Optional UAE calendar rules, all off unless enabled
    observe_uae_holidays = db.Column(db.Boolean, nullable=False, default=False)
    avoid_prayer_times = db.Column(db.Boolean, nullable=False, default=False)
    respect_ramadan = db.Column(db.Boolean, nullable=False, default=False)
    require_bilingual = db.Column(db.Boolean, nullable=False, default=False)
    support_email = db.Column(db.String(255), nullable=True)
    support_phone = db.Column(db.String(50), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    sequences = db.relationship('Sequence', backref='company', lazy=True, cascade='all, delete-orphan')
    invoices = db.relationship('Invoice', backref='company', lazy=True, cascade='all, delete-orphan')

    def calendar_config(self) -> BusinessWindow:
        """Business window used to schedule this company's sends."""
        return BusinessWindow(
            working_days=self.working_days if self.working_days is not None else _default_working_days(),
            start_hour=self.start_hour if self.start_hour is not None else 8,
            end_hour=self.end_hour if self.end_hour is not None else 18,
            timezone=self.timezone or 'Asia/Dubai',
            holidays=self.holidays or [],
            observe_uae_holidays=bool(self.observe_uae_holidays),
            avoid_prayer_times=bool(self.avoid_prayer_times),
            respect_ramadan=bool(self.respect_ramadan),
        )

    def to_dict(self):
        return {
            'id': str(self.id),
            'name': self.name,
            'timezone': self.timezone,
            'working_days': self.working_days,
            'start_hour': self.start_hour,
            'end_hour': self.end_hour,
            'holidays': self.holidays,
            'observe_uae_holidays': bool(self.observe_uae_holidays),
            'avoid_prayer_times': bool(self.avoid_prayer_times),
            'respect_ramadan': bool(self.respect_ramadan),
            'require_bilingual': self.require_bilingual,
            'support_email': self.support_email,
            'support_phone': self.support_phone,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

    def __repr__(self):
        return f'<Company {self.name}>'
