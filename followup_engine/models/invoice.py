import uuid
from datetime import datetime
from followup_engine.extensions import db


class InvoiceStatus:
    DRAFT = 'DRAFT'
    SENT = 'SENT'
    OVERDUE = 'OVERDUE'
    PARTIALLY_PAID = 'PARTIALLY_PAID'
    PAID = 'PAID'
    WRITTEN_OFF = 'WRITTEN_OFF'
    CANCELLED = 'CANCELLED'
    DISPUTED = 'DISPUTED'

    ALL = (DRAFT, SENT, OVERDUE, PARTIALLY_PAID, PAID, WRITTEN_OFF, CANCELLED, DISPUTED)
    TERMINAL = (PAID, WRITTEN_OFF, CANCELLED)
    # Statuses that end every live follow-up for the invoice
    STOPPING = TERMINAL + (DISPUTED,)
    STOP_REASONS = {
        PAID: 'payment_received',
        WRITTEN_OFF: 'invoice_written_off',
        CANCELLED: 'invoice_cancelled',
        DISPUTED: 'dispute_opened',
    }


class Invoice(db.Model):
    __tablename__ = 'invoices'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = db.Column(db.String(36), db.ForeignKey('companies.id'), nullable=False)
    number = db.Column(db.String(100), nullable=False)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    amount = db.Column(db.Float, nullable=False, default=0.0)
    amount_paid = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(3), nullable=False, default='AED')
    due_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(50), nullable=False, default=InvoiceStatus.SENT)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=datetime.utcnow)

    # Relationships
    executions = db.relationship('Execution', backref='invoice', lazy=True)

    __table_args__ = (
        db.UniqueConstraint('company_id', 'number', name='uq_invoices_company_number'),
    )

    @property
    def outstanding_amount(self):
        return max(0.0, (self.amount or 0.0) - (self.amount_paid or 0.0))

    def days_overdue(self, now=None):
        """Whole days past the due date, never negative."""
        if not self.due_date:
            return 0
        today = (now or datetime.utcnow()).date()
        return max(0, (today - self.due_date).days)

    def to_dict(self):
        return {
            'id': str(self.id),
            'company_id': str(self.company_id),
            'number': self.number,
            'customer_name': self.customer_name,
            'customer_email': self.customer_email,
            'amount': self.amount,
            'amount_paid': self.amount_paid,
            'outstanding_amount': self.outstanding_amount,
            'currency': self.currency,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    def __repr__(self):
        return f'<Invoice {self.number} ({self.status})>'
