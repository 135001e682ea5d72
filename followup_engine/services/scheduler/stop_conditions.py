"""
Stop condition checks evaluated at every tick boundary.

Global conditions apply to every execution: a paid, written-off, cancelled or
disputed invoice (or one whose payments cover the full amount), a suppressed
recipient, and a pending engagement stop.
Step-level tags add checks for the step about to be sent.
"""

import logging
from typing import List, Optional

from followup_engine.models import EmailSuppression, Execution, Invoice, SequenceStep, StepLog
from followup_engine.models.invoice import InvoiceStatus
from followup_engine.models.sequence import StopConditionTag

logger = logging.getLogger(__name__)


def _check_stop_conditions(self, execution: Execution, invoice: Invoice,
                           step: Optional[SequenceStep]) -> Optional[str]:
    """Return the stop reason if the execution must not continue, else None."""
    if invoice.status in InvoiceStatus.STOPPING:
        return InvoiceStatus.STOP_REASONS[invoice.status]

    # Fully paid invoices stop even if their status was never moved to PAID
    if invoice.outstanding_amount <= 0:
        return InvoiceStatus.STOP_REASONS[InvoiceStatus.PAID]

    if EmailSuppression.is_suppressed(invoice.customer_email):
        return 'unsubscribed'

    if execution.pending_stop_reason:
        return execution.pending_stop_reason

    tags: List[str] = (step.stop_conditions or []) if step else []
    if not tags:
        return None

    if StopConditionTag.PARTIAL_PAYMENT in tags and (invoice.amount_paid or 0) > 0:
        return 'partial_payment'

    if StopConditionTag.CUSTOMER_RESPONSE in tags and self._has_engagement(execution, StepLog.replied_at):
        return 'customer_response'

    if StopConditionTag.LINK_CLICKED in tags and self._has_engagement(execution, StepLog.clicked_at):
        return 'link_clicked'

    return None


def _has_engagement(self, execution: Execution, column) -> bool:
    return StepLog.query.filter(
        StepLog.execution_id == execution.id,
        column.isnot(None)
    ).first() is not None
