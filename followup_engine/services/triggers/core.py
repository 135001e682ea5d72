"""
Core trigger functionality.

This module contains the TriggerEvaluator class:
- Starting an execution of a sequence for an invoice
- Stopping, pausing and resuming executions
- Execution status queries

Every write to an existing execution is an optimistic compare-and-set on its
version column; a concurrent change causes a re-read and retry.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from followup_engine.extensions import db
from followup_engine.exceptions import (
    ConflictError,
    InvoiceNotFoundError,
    SchedulerConflict,
    SequenceInactiveError,
    SequenceNotFoundError,
    ValidationError,
)
from followup_engine.models import Event, Execution, ExecutionStatus, Invoice, Sequence
from followup_engine.services.business_window import next_valid_instant
from followup_engine.services.signals import execution_finished

from .conditions import TriggerCondition

logger = logging.getLogger(__name__)

MAX_CAS_RETRIES = 5


class TriggerEvaluator:
    """Creates and controls sequence executions for invoices."""

    def __init__(self, config=None):
        if config is None:
            config = current_app.config
        self.min_invoice_amount = float(config.get('MIN_INVOICE_AMOUNT', 10))
        self.max_emails_per_recipient_per_day = int(config.get('MAX_EMAILS_PER_RECIPIENT_PER_DAY', 3))

    def start(self, sequence_id: str, invoice_id: str, condition: Optional[TriggerCondition] = None,
              start_immediately: bool = False, custom_start_time: Optional[datetime] = None,
              skip_validation: bool = False, now: Optional[datetime] = None) -> Execution:
        """Start following up an invoice with a sequence."""
        now = now or datetime.utcnow()
        condition = condition or TriggerCondition.manual()

        sequence = db.session.get(Sequence, sequence_id)
        if not sequence:
            raise SequenceNotFoundError(sequence_id)
        if not sequence.active:
            raise SequenceInactiveError(sequence_id)
        if not sequence.steps:
            raise ValidationError(f"Sequence {sequence_id} has no steps")

        invoice = db.session.get(Invoice, invoice_id)
        if not invoice:
            raise InvoiceNotFoundError(invoice_id)
        if invoice.company_id != sequence.company_id:
            raise ValidationError("Invoice and sequence belong to different companies")

        self._check_invoice_eligibility(invoice, condition, skip_validation, now)

        existing = self._find_live_execution(sequence_id, invoice_id)
        if existing:
            raise ConflictError(existing.id)

        calendar = sequence.company.calendar_config()
        if start_immediately:
            next_run_at = next_valid_instant(now, calendar)
        elif custom_start_time:
            next_run_at = next_valid_instant(custom_start_time, calendar)
        else:
            first_delay = sequence.steps[0].delay_days or 0
            next_run_at = next_valid_instant(now + timedelta(days=first_delay), calendar)

        trigger = condition.to_dict()
        value = trigger['value']
        execution = Execution(
            company_id=sequence.company_id,
            sequence_id=sequence_id,
            invoice_id=invoice_id,
            status=ExecutionStatus.ACTIVE if start_immediately else ExecutionStatus.PENDING,
            current_step_index=0,
            total_steps=len(sequence.steps),
            next_run_at=next_run_at,
            started_at=now,
            trigger_type=trigger['type'],
            trigger_operator=trigger['operator'],
            trigger_value=None if value is None else str(value),
            sequence_revision=sequence.revision,
        )
        db.session.add(execution)
        try:
            db.session.flush()
        except IntegrityError:
            # Lost the race for the live-pair unique index; report the winner
            db.session.rollback()
            existing = self._find_live_execution(sequence_id, invoice_id)
            if existing:
                logger.info(f"Concurrent start for sequence {sequence_id}, invoice {invoice_id} lost to {existing.id}")
                raise ConflictError(existing.id)
            raise

        db.session.add(Event(
            execution_id=execution.id,
            event_type='sequence_triggered',
            timestamp=now,
            meta_json={
                'sequence_id': sequence_id,
                'invoice_id': invoice_id,
                'trigger': trigger,
                'start_immediately': start_immediately,
                'skip_validation': skip_validation,
                'next_run_at': next_run_at.isoformat()
            }
        ))
        db.session.commit()

        logger.info(f"Started execution {execution.id} of sequence {sequence_id} for invoice {invoice_id}, "
                    f"first step at {next_run_at}")
        return execution

    def stop(self, sequence_id: str, invoice_id: str, reason: str = 'manual',
             now: Optional[datetime] = None) -> Dict[str, Any]:
        """Stop the live execution for the pair; a no-op when there is none."""
        now = now or datetime.utcnow()
        for attempt in range(MAX_CAS_RETRIES):
            execution = self._find_live_execution(sequence_id, invoice_id)
            if not execution:
                return {'stopped': False, 'message': 'No active sequence found for this invoice'}
            try:
                self._mark_stopped(execution, reason, now)
                db.session.commit()
            except StaleDataError:
                db.session.rollback()
                logger.info(f"Version conflict stopping execution {execution.id}, retrying ({attempt + 1})")
                continue

            execution_finished.send(self, execution_id=execution.id, status=ExecutionStatus.STOPPED, reason=reason)
            logger.info(f"Stopped execution {execution.id}: {reason}")
            return {'stopped': True, 'execution_id': execution.id}

        raise SchedulerConflict(f"Could not stop execution for sequence {sequence_id}, invoice {invoice_id}")

    def stop_all_for_invoice(self, invoice_id: str, reason: str, now: Optional[datetime] = None) -> List[str]:
        """Stop every live execution of an invoice across sequences."""
        now = now or datetime.utcnow()
        live = Execution.query.filter(
            Execution.invoice_id == invoice_id,
            Execution.status.in_(ExecutionStatus.LIVE)
        ).all()
        stopped = []
        for execution in live:
            result = self.stop(execution.sequence_id, invoice_id, reason, now)
            if result['stopped']:
                stopped.append(result['execution_id'])
        return stopped

    def _mark_stopped(self, execution: Execution, reason: str, now: datetime):
        execution.status = ExecutionStatus.STOPPED
        execution.stop_reason = reason
        execution.stopped_at = now
        execution.next_run_at = None
        execution.locked_by = None
        execution.locked_until = None
        db.session.add(Event(
            execution_id=execution.id,
            event_type='execution_stopped',
            timestamp=now,
            meta_json={'reason': reason, 'step_index': execution.current_step_index}
        ))

    def pause(self, sequence_id: str, invoice_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        for attempt in range(MAX_CAS_RETRIES):
            execution = self._find_live_execution(sequence_id, invoice_id)
            if not execution or execution.status != ExecutionStatus.ACTIVE:
                return {'paused': False, 'message': 'No active sequence to pause for this invoice'}
            execution.status = ExecutionStatus.PAUSED
            db.session.add(Event(execution_id=execution.id, event_type='execution_paused', timestamp=now))
            try:
                db.session.commit()
            except StaleDataError:
                db.session.rollback()
                continue
            logger.info(f"Paused execution {execution.id}")
            return {'paused': True, 'execution_id': execution.id}
        raise SchedulerConflict(f"Could not pause execution for sequence {sequence_id}, invoice {invoice_id}")

    def resume(self, sequence_id: str, invoice_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        for attempt in range(MAX_CAS_RETRIES):
            execution = self._find_live_execution(sequence_id, invoice_id)
            if not execution or execution.status != ExecutionStatus.PAUSED:
                return {'resumed': False, 'message': 'No paused sequence to resume for this invoice'}
            calendar = execution.sequence.company.calendar_config()
            candidate = max(execution.next_run_at or now, now)
            execution.status = ExecutionStatus.ACTIVE
            execution.next_run_at = next_valid_instant(candidate, calendar)
            db.session.add(Event(
                execution_id=execution.id,
                event_type='execution_resumed',
                timestamp=now,
                meta_json={'next_run_at': execution.next_run_at.isoformat()}
            ))
            try:
                db.session.commit()
            except StaleDataError:
                db.session.rollback()
                continue
            logger.info(f"Resumed execution {execution.id}, next step at {execution.next_run_at}")
            return {'resumed': True, 'execution_id': execution.id, 'next_run_at': execution.next_run_at.isoformat()}
        raise SchedulerConflict(f"Could not resume execution for sequence {sequence_id}, invoice {invoice_id}")

    def status(self, sequence_id: str, invoice_id: str) -> Dict[str, Any]:
        """The live execution for the pair, or the most recent one."""
        execution = self._find_live_execution(sequence_id, invoice_id) or \
            self._find_latest_execution(sequence_id, invoice_id)
        if not execution:
            return {'has_execution': False}
        return {
            'has_execution': True,
            'execution': execution.to_dict(),
            'step_logs': [log.to_dict() for log in execution.step_logs]
        }

    # Import functionality from other modules
    from .eligibility import (
        _check_invoice_eligibility,
        _count_recent_messages,
        _find_live_execution,
        _find_latest_execution,
    )
    from .automatic import _in_cooldown, scan, handle_invoice_status_change
