"""
Automatic trigger evaluation.

This module contains functionality for:
- Scanning active sequences with trigger conditions for matching invoices
- Per (sequence, invoice) cooldown between automatic starts
- Reacting to invoice status changes (stop on payment/dispute, scan on overdue)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from followup_engine.extensions import db
from followup_engine.exceptions import (
    ConflictError,
    IneligibleInvoiceError,
    InvoiceNotFoundError,
    ValidationError,
)
from followup_engine.models import Execution, Invoice, Sequence
from followup_engine.models.invoice import InvoiceStatus

from .conditions import parse_conditions

logger = logging.getLogger(__name__)

# Invoice statuses considered by the automatic scan
SCANNABLE_STATUSES = (InvoiceStatus.SENT, InvoiceStatus.OVERDUE, InvoiceStatus.PARTIALLY_PAID)


def _in_cooldown(self, sequence: Sequence, invoice_id: str, now: datetime) -> bool:
    """Whether an execution for the pair was started within the sequence's cooldown."""
    if not sequence.cooldown_hours:
        return False
    since = now - timedelta(hours=sequence.cooldown_hours)
    recent = Execution.query.filter(
        Execution.sequence_id == sequence.id,
        Execution.invoice_id == invoice_id,
        Execution.started_at >= since
    ).first()
    return recent is not None


def scan(self, now: Optional[datetime] = None, invoice_id: Optional[str] = None) -> Dict[str, Any]:
    """Start executions for every invoice matching an active sequence's trigger conditions."""
    now = now or datetime.utcnow()
    started = []
    skipped = 0

    sequences = Sequence.query.filter_by(active=True).all()
    for sequence in sequences:
        try:
            conditions = parse_conditions(sequence.trigger_conditions)
        except ValidationError as e:
            logger.error(f"Sequence {sequence.id} has invalid trigger conditions: {e.message}")
            continue
        if not conditions:
            continue

        query = Invoice.query.filter(
            Invoice.company_id == sequence.company_id,
            Invoice.status.in_(SCANNABLE_STATUSES)
        )
        if invoice_id:
            query = query.filter(Invoice.id == invoice_id)

        for invoice in query.all():
            if not all(condition.evaluate(invoice, now) for condition in conditions):
                continue
            if self._in_cooldown(sequence, invoice.id, now):
                logger.info(f"Sequence {sequence.id} in cooldown for invoice {invoice.id}")
                skipped += 1
                continue
            try:
                execution = self.start(sequence.id, invoice.id, condition=conditions[0], now=now)
                started.append(execution.id)
            except (ConflictError, IneligibleInvoiceError) as e:
                logger.info(f"Automatic trigger skipped for sequence {sequence.id}, invoice {invoice.id}: {e.message}")
                skipped += 1

    if started:
        logger.info(f"Automatic trigger scan started {len(started)} executions ({skipped} skipped)")
    return {'started': started, 'skipped': skipped}


def handle_invoice_status_change(self, invoice_id: str, new_status: str, amount_paid: Optional[float] = None,
                                 now: Optional[datetime] = None) -> Dict[str, Any]:
    """Apply an invoice status change and propagate it to live executions."""
    now = now or datetime.utcnow()
    new_status = (new_status or '').upper()
    if new_status not in InvoiceStatus.ALL:
        raise ValidationError(f"Unknown invoice status '{new_status}'")

    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise InvoiceNotFoundError(invoice_id)

    previous_status = invoice.status
    invoice.status = new_status
    if amount_paid is not None:
        invoice.amount_paid = float(amount_paid)
    db.session.commit()
    logger.info(f"Invoice {invoice_id} status {previous_status} -> {new_status}")

    stopped = []
    if new_status in InvoiceStatus.STOPPING:
        stopped = self.stop_all_for_invoice(invoice_id, InvoiceStatus.STOP_REASONS[new_status], now=now)
    elif invoice.outstanding_amount <= 0:
        stopped = self.stop_all_for_invoice(invoice_id, InvoiceStatus.STOP_REASONS[InvoiceStatus.PAID], now=now)

    triggered = []
    if new_status == InvoiceStatus.OVERDUE and previous_status != InvoiceStatus.OVERDUE:
        triggered = self.scan(now=now, invoice_id=invoice_id)['started']

    return {
        'invoice': invoice.to_dict(),
        'previous_status': previous_status,
        'stopped_executions': stopped,
        'triggered_executions': triggered
    }
