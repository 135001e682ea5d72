"""
Invoice eligibility checks for starting a sequence.

This module contains functionality for:
- Hard eligibility rules (terminal/disputed status, nothing outstanding,
  missing recipient)
- Soft rules skipped by ``skip_validation`` (suppression, minimum amount,
  trigger condition, per-recipient daily message limit)
- Locating the live execution for a (sequence, invoice) pair
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from followup_engine.exceptions import IneligibleInvoiceError
from followup_engine.models import EmailSuppression, Execution, ExecutionStatus, Invoice, StepLog
from followup_engine.models.invoice import InvoiceStatus

from .conditions import TriggerCondition

logger = logging.getLogger(__name__)


def _check_invoice_eligibility(self, invoice: Invoice, condition: TriggerCondition,
                               skip_validation: bool, now: datetime):
    """Raise IneligibleInvoiceError when the invoice must not be followed up."""
    if invoice.status in InvoiceStatus.STOPPING:
        raise IneligibleInvoiceError(invoice.id, f"invoice status is {invoice.status}")

    if invoice.outstanding_amount <= 0:
        raise IneligibleInvoiceError(invoice.id, "invoice has nothing outstanding")

    if not invoice.customer_email:
        raise IneligibleInvoiceError(invoice.id, "invoice has no recipient address")

    if skip_validation:
        logger.info(f"Skipping soft eligibility checks for invoice {invoice.id}")
        return

    if EmailSuppression.is_suppressed(invoice.customer_email):
        raise IneligibleInvoiceError(invoice.id, "recipient has unsubscribed")

    if (invoice.amount or 0) < self.min_invoice_amount:
        raise IneligibleInvoiceError(invoice.id, f"invoice amount below minimum of {self.min_invoice_amount}")

    if not condition.evaluate(invoice, now):
        raise IneligibleInvoiceError(invoice.id, f"trigger condition not met: {condition.describe()}")

    sent_today = self._count_recent_messages(invoice.customer_email, now)
    if sent_today >= self.max_emails_per_recipient_per_day:
        raise IneligibleInvoiceError(
            invoice.id,
            f"daily message limit reached for recipient ({sent_today}/{self.max_emails_per_recipient_per_day})"
        )


def _count_recent_messages(self, email: str, now: datetime) -> int:
    """Messages dispatched to this recipient in the 24 hours before ``now``."""
    since = now - timedelta(hours=24)
    return StepLog.query.filter(
        StepLog.recipient == email,
        StepLog.sent_at.isnot(None),
        StepLog.sent_at >= since
    ).count()


def _find_live_execution(self, sequence_id: str, invoice_id: str) -> Optional[Execution]:
    return Execution.query.filter(
        Execution.sequence_id == sequence_id,
        Execution.invoice_id == invoice_id,
        Execution.status.in_(ExecutionStatus.LIVE)
    ).first()


def _find_latest_execution(self, sequence_id: str, invoice_id: str) -> Optional[Execution]:
    return Execution.query.filter_by(
        sequence_id=sequence_id,
        invoice_id=invoice_id
    ).order_by(Execution.started_at.desc()).first()
