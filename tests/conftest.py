"""
Pytest configuration and fixtures for Follow-up Engine tests.

This module provides:
- Test database setup and teardown
- Flask test client
- Mock dispatcher
- Common test data (a Dubai company, an overdue invoice, a three-step sequence)
"""

import pytest
from datetime import date, datetime
from unittest.mock import Mock

from followup_engine.main import create_app
from followup_engine.extensions import db
from followup_engine.models import Company, Invoice, InvoiceStatus, Sequence, SequenceStep
from followup_engine.services.dispatch import Dispatcher, DispatchResult
from followup_engine.services.scheduler import ExecutionScheduler
from followup_engine.services.triggers import TriggerEvaluator

# Sunday 2024-03-17 10:00 in Dubai (UTC+4), inside the Sun-Thu 08:00-18:00 window
SUNDAY_10_DUBAI = datetime(2024, 3, 17, 6, 0)

# Test configuration
TEST_CONFIG = {
    'TESTING': True,
    'SECRET_KEY': 'test-secret-key',
    'DISPATCH_BACKEND': 'log',
    'RESEND_API_KEY': 'test-resend-key',
    'DISPATCH_FROM_EMAIL': 'accounts@test.example',
    'CORS_ORIGINS': ['http://localhost:3000'],
    'MAX_DISPATCH_ATTEMPTS': 3,
    'RETRY_BACKOFF_BASE_SECONDS': 300,
    'RETRY_BACKOFF_MAX_SECONDS': 21600,
    'COMPLIANCE_COOLDOWN_MINUTES': 60,
    'MAX_EMAILS_PER_RECIPIENT_PER_DAY': 3,
    'MIN_INVOICE_AMOUNT': 10,
    'LEASE_SECONDS': 120,
    'LOG_LEVEL': 'DEBUG'
}

STEP_ONE_CONTENT = (
    "Dear {{customerName}},\n\n"
    "Kindly note that invoice {{invoiceNumber}} for {{currency}} {{invoiceAmount}} was due on "
    "{{dueDate}}. We would appreciate settlement at your convenience.\n\n"
    "Thank you,\n{{companyName}}"
)

STEP_TWO_CONTENT = (
    "Dear {{customerName}},\n\n"
    "Invoice {{invoiceNumber}} is now {{daysPastDue}} days past due. Kindly arrange payment "
    "or please contact us if you have any questions.\n\n"
    "Best regards,\n{{companyName}}"
)

STEP_TWO_CONTENT_AR = (
    "عزيزي {{customerName}}،\n\n"
    "نرجو التكرم بترتيب سداد الفاتورة {{invoiceNumber}}.\n\n"
    "شكراً لتعاونكم"
)

STEP_THREE_CONTENT = (
    "Dear {{customerName}},\n\n"
    "We respectfully request settlement of invoice {{invoiceNumber}} for {{currency}} "
    "{{outstandingAmount}}. We would appreciate discussing a payment arrangement.\n\n"
    "Sincerely,\n{{companyName}}"
)


@pytest.fixture
def app():
    """Create and configure a new app instance for each test."""
    app = create_app('testing')
    app.config.update(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """A test client for the app."""
    return app.test_client()


@pytest.fixture
def db_session(app):
    """Database session for tests."""
    with app.app_context():
        yield db.session


@pytest.fixture
def sample_company(db_session):
    """A UAE company working Sunday to Thursday, 08:00-18:00 Dubai time."""
    company = Company(
        name="Gulf Trading LLC",
        timezone="Asia/Dubai",
        working_days=[0, 1, 2, 3, 4],
        start_hour=8,
        end_hour=18,
        holidays=[],
        support_email="accounts@gulftrading.ae",
        support_phone="+971 4 000 0000"
    )
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture
def sample_invoice(db_session, sample_company):
    """An overdue invoice with a recipient."""
    invoice = Invoice(
        company_id=sample_company.id,
        number="INV-1001",
        customer_name="Fatima Al Mansoori",
        customer_email="fatima@customer.ae",
        amount=5000.0,
        amount_paid=0.0,
        currency="AED",
        due_date=date(2024, 3, 1),
        status=InvoiceStatus.OVERDUE
    )
    db_session.add(invoice)
    db_session.commit()
    return invoice


@pytest.fixture
def sample_sequence(db_session, sample_company):
    """Three steps with delays of 0, 3 and 7 days."""
    sequence = Sequence(
        company_id=sample_company.id,
        name="Standard follow-up",
        active=True,
        trigger_conditions=[],
        cooldown_hours=24
    )
    sequence.steps = [
        SequenceStep(
            step_number=1, delay_days=0,
            subject="Invoice {{invoiceNumber}} - friendly reminder",
            content=STEP_ONE_CONTENT,
            language="ENGLISH", tone="FRIENDLY",
            stop_conditions=["PAYMENT_RECEIVED"]
        ),
        SequenceStep(
            step_number=2, delay_days=3,
            subject="Invoice {{invoiceNumber}} - pending payment",
            content=STEP_TWO_CONTENT,
            subject_ar="الفاتورة {{invoiceNumber}}",
            content_ar=STEP_TWO_CONTENT_AR,
            language="BOTH", tone="BUSINESS",
            stop_conditions=["PAYMENT_RECEIVED", "PARTIAL_PAYMENT", "CUSTOMER_RESPONSE"]
        ),
        SequenceStep(
            step_number=3, delay_days=7,
            subject="Invoice {{invoiceNumber}} - settlement request",
            content=STEP_THREE_CONTENT,
            language="ENGLISH", tone="FORMAL",
            stop_conditions=["PAYMENT_RECEIVED", "DISPUTE_OPENED"]
        ),
    ]
    db_session.add(sequence)
    db_session.commit()
    return sequence


@pytest.fixture
def mock_dispatcher():
    """Dispatcher that reports every send as successful with a ref derived from the token."""
    dispatcher = Mock(spec=Dispatcher)
    dispatcher.name = 'mock'
    dispatcher.send.side_effect = lambda token, recipient, subject, body, language: \
        DispatchResult.sent(f"ref-{token}")
    return dispatcher


@pytest.fixture
def scheduler(app, mock_dispatcher):
    """A scheduler bound to the test app and the mock dispatcher (not started)."""
    return ExecutionScheduler(app, dispatcher=mock_dispatcher)


@pytest.fixture
def evaluator(app):
    """Trigger evaluator configured from the test app."""
    return TriggerEvaluator(app.config)


@pytest.fixture
def json_headers():
    """Headers for JSON requests."""
    return {
        'Content-Type': 'application/json'
    }
