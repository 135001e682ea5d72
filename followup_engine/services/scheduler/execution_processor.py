"""
Execution processing and step dispatch.

This module contains functionality for:
- Polling due executions
- The per-execution tick (stop checks, compliance, dispatch, advance)
- Retry scheduling and failure handling
- Dispatch token derivation

A tick re-reads the execution, and every write to it is version checked. When
another writer wins, the tick rolls back and starts over from a fresh read.
Once the lease is claimed, the writes that follow a send only go ahead while
the row still carries the claimed version; a stop or pause that lands while
the provider call is in flight wins and the tick reports "superseded".
The StepLog keyed by the dispatch token records a successful send before the
execution is advanced, so a tick that is retried after a send confirms the
StepLog instead of sending again.
"""

import concurrent.futures
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from followup_engine.extensions import db
from followup_engine.exceptions import (
    CalendarConfigError,
    DispatchPermanentError,
    DispatchTransientError,
    SchedulerConflict,
)
from followup_engine.models import DeliveryStatus, Event, Execution, ExecutionStatus, StepLog
from followup_engine.services.compliance import ComplianceGate
from followup_engine.services.dispatch import DispatchResult
from followup_engine.services.signals import execution_finished, step_completed

logger = logging.getLogger(__name__)

DISPATCH_NAMESPACE = uuid.UUID('5b0f5d2e-8a7c-4f43-9d1e-2c6a1f0e7b94')

MAX_CAS_RETRIES = 3


def dispatch_token_for(execution_id: str, step_number: int) -> str:
    """Deterministic token for one step of one execution."""
    return str(uuid.uuid5(DISPATCH_NAMESPACE, f"{execution_id}:{step_number}"))


def _fetch_due_executions(self, now: datetime, limit: Optional[int] = None) -> List[str]:
    """Ids of runnable executions that are due (or carry a pending stop) and not leased."""
    rows = db.session.query(Execution.id).filter(
        Execution.status.in_(ExecutionStatus.RUNNABLE),
        or_(Execution.next_run_at <= now, Execution.pending_stop_reason.isnot(None)),
        or_(Execution.locked_until.is_(None), Execution.locked_until <= now)
    ).order_by(Execution.next_run_at.asc()).limit(limit or self.batch_size).all()
    return [row[0] for row in rows]


def _process_execution(self, execution_id: str, worker_id: str, now: Optional[datetime] = None) -> str:
    """Run one tick for an execution and return its outcome."""
    now = now or datetime.utcnow()
    for attempt in range(MAX_CAS_RETRIES):
        try:
            return self._tick(execution_id, worker_id, now)
        except StaleDataError:
            db.session.rollback()
            logger.info(f"Version conflict on execution {execution_id}, re-reading ({attempt + 1}/{MAX_CAS_RETRIES})")
        except SchedulerConflict as e:
            db.session.rollback()
            logger.info(f"Lost the claim on execution {execution_id}, re-reading ({attempt + 1}/{MAX_CAS_RETRIES}): {e.message}")
        except CalendarConfigError as e:
            db.session.rollback()
            logger.error(f"Calendar configuration error for execution {execution_id}: {e.message}")
            return self._fail_on_calendar_error(execution_id, e, now)
    return 'conflict'


def _tick(self, execution_id: str, worker_id: str, now: datetime) -> str:
    execution = db.session.get(Execution, execution_id, populate_existing=True)
    if execution is None or execution.status not in ExecutionStatus.RUNNABLE:
        return 'skipped'
    if execution.lease_held(now) and execution.locked_by != worker_id:
        return 'locked'

    invoice = execution.invoice
    sequence = execution.sequence
    steps = sequence.steps
    step = steps[execution.current_step_index] if execution.current_step_index < len(steps) else None

    stop_reason = self._check_stop_conditions(execution, invoice, step)
    if stop_reason:
        self._finish(execution, ExecutionStatus.STOPPED, stop_reason, now)
        db.session.commit()
        execution_finished.send(self, execution_id=execution.id, status=ExecutionStatus.STOPPED, reason=stop_reason)
        logger.info(f"Execution {execution.id} stopped at step index {execution.current_step_index}: {stop_reason}")
        return 'stopped'

    if execution.next_run_at and execution.next_run_at > now:
        return 'not_due'

    if step is None:
        self._finish(execution, ExecutionStatus.COMPLETED, None, now)
        db.session.commit()
        execution_finished.send(self, execution_id=execution.id, status=ExecutionStatus.COMPLETED, reason=None)
        return 'completed'

    company = sequence.company
    calendar = company.calendar_config()
    if not calendar.is_within_window(now):
        return self._defer_to_window(execution, step, calendar, now)

    self._claim_lease(execution, worker_id, now)
    claimed_version = execution.version

    token = dispatch_token_for(execution.id, step.step_number)
    step_log = StepLog.query.filter_by(execution_id=execution.id, step_number=step.step_number).first()
    if step_log and step_log.dispatched:
        logger.info(f"Step {step.step_number} of execution {execution.id} already dispatched "
                    f"({step_log.dispatch_ref}); confirming without resending")
        return self._advance(execution, steps, step_log, now, claimed_version)

    engine = self._get_sequence_engine()

    rendered = engine._render_step(step, invoice, now)
    gate = ComplianceGate(require_bilingual=company.require_bilingual, min_score=self.compliance_min_score)
    compliance = gate.validate(step, rendered)
    if not compliance.allowed:
        return self._defer_for_compliance(execution, step, compliance, calendar, now)

    subject, body = engine._compose_outbound(step, rendered)
    recipient = invoice.customer_email
    step_log = self._prepare_step_log(execution, step, step_log, token, recipient, subject, body)

    if recipient:
        result = self._dispatch(token, recipient, subject, body, step.language)
    else:
        result = DispatchResult.failed('invoice has no recipient address', retryable=False)

    if result.success:
        step_log.dispatch_ref = result.dispatch_ref
        step_log.sent_at = now
        step_log.delivery_status = DeliveryStatus.SENT
        step_log.last_error_reason = None
        db.session.commit()
        return self._advance(execution, steps, step_log, now, claimed_version)

    return self._handle_dispatch_failure(execution, step, step_log, result, calendar, now, claimed_version)


def _prepare_step_log(self, execution: Execution, step, step_log: Optional[StepLog], token: str,
                      recipient: str, subject: str, body: str) -> StepLog:
    """Create or reuse the StepLog for this step and count the attempt."""
    if step_log is None:
        step_log = StepLog(
            execution_id=execution.id,
            step_number=step.step_number,
            dispatch_token=token,
            attempt_count=0
        )
        db.session.add(step_log)
    step_log.recipient = recipient
    step_log.subject = subject
    step_log.body = body
    step_log.language = step.language
    step_log.attempt_count = (step_log.attempt_count or 0) + 1
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise SchedulerConflict(f"StepLog for step {step.step_number} of execution {execution.id} created concurrently")
    return step_log


def _dispatch(self, token: str, recipient: str, subject: str, body: str, language: str) -> DispatchResult:
    """Call the dispatcher with a bounded timeout."""
    future = self._get_dispatch_executor().submit(self.dispatcher.send, token, recipient, subject, body, language)
    try:
        return future.result(timeout=self.dispatch_timeout)
    except concurrent.futures.TimeoutError:
        if future.cancel():
            logger.warning(f"Dispatch {token} still queued after {self.dispatch_timeout}s; cancelled before sending")
            return DispatchResult.failed(f"dispatch pool busy, send not started within {self.dispatch_timeout}s",
                                         retryable=True, attempted=False)
        logger.error(f"Dispatch {token} timed out after {self.dispatch_timeout}s")
        return DispatchResult.failed(f"dispatch timed out after {self.dispatch_timeout}s", retryable=True)
    except DispatchPermanentError as e:
        logger.error(f"Dispatch {token} failed permanently: {e.message}")
        return DispatchResult.failed(e.message, retryable=False)
    except DispatchTransientError as e:
        logger.warning(f"Dispatch {token} failed transiently: {e.message}")
        return DispatchResult.failed(e.message, retryable=True)
    except Exception as e:
        logger.error(f"Unexpected error dispatching {token}: {str(e)}")
        return DispatchResult.failed(str(e), retryable=True)


def _advance(self, execution: Execution, steps, step_log: StepLog, now: datetime, claimed_version: int) -> str:
    """Move past a dispatched step and schedule the next one or complete."""
    execution = self._reload_if_claimed(execution.id, claimed_version)
    if execution is None:
        logger.info(f"Execution {step_log.execution_id} changed while step {step_log.step_number} was in flight; "
                    f"step recorded as sent, execution left as it is")
        return 'superseded'

    execution.current_step_index = min(execution.current_step_index + 1, len(steps))
    execution.total_steps = max(execution.total_steps or 0, len(steps))
    self._release_lease(execution)

    completed = execution.current_step_index >= len(steps)
    if completed:
        execution.status = ExecutionStatus.COMPLETED
        execution.completed_at = now
        execution.next_run_at = None
    else:
        next_step = steps[execution.current_step_index]
        calendar = execution.sequence.company.calendar_config()
        execution.next_run_at = self._get_sequence_engine()._calculate_step_run_at(calendar, now, next_step.delay_days)

    db.session.add(Event(
        execution_id=execution.id,
        event_type='step_dispatched',
        timestamp=now,
        meta_json={
            'step_number': step_log.step_number,
            'dispatch_ref': step_log.dispatch_ref,
            'attempts': step_log.attempt_count,
            'next_run_at': execution.next_run_at.isoformat() if execution.next_run_at else None
        }
    ))
    db.session.commit()

    step_completed.send(self, execution_id=execution.id, step_number=step_log.step_number,
                        dispatch_ref=step_log.dispatch_ref)
    if completed:
        execution_finished.send(self, execution_id=execution.id, status=ExecutionStatus.COMPLETED, reason=None)
        logger.info(f"Execution {execution.id} completed after {len(steps)} steps")
        return 'completed'

    logger.info(f"Execution {execution.id} advanced to step index {execution.current_step_index}, "
                f"next run at {execution.next_run_at}")
    return 'advanced'


def _defer_to_window(self, execution: Execution, step, calendar, now: datetime) -> str:
    """Push a due step that came up outside the business window to the next opening."""
    execution.next_run_at = calendar.next_valid_instant(now)
    db.session.add(Event(
        execution_id=execution.id,
        event_type='window_deferred',
        timestamp=now,
        meta_json={'step_number': step.step_number, 'next_run_at': execution.next_run_at.isoformat()}
    ))
    db.session.commit()
    logger.info(f"Step {step.step_number} of execution {execution.id} due outside the business window, "
                f"moved to {execution.next_run_at}")
    return 'outside_window'


def _defer_for_compliance(self, execution: Execution, step, compliance, calendar, now: datetime) -> str:
    execution.next_run_at = self._get_sequence_engine()._calculate_deferral_run_at(
        calendar, now, self.compliance_cooldown_minutes
    )
    execution.compliance_deferrals = (execution.compliance_deferrals or 0) + 1
    self._release_lease(execution)
    db.session.add(Event(
        execution_id=execution.id,
        event_type='compliance_deferred',
        timestamp=now,
        meta_json={
            'step_number': step.step_number,
            'issues': compliance.issues,
            'score': compliance.score,
            'next_run_at': execution.next_run_at.isoformat()
        }
    ))
    db.session.commit()
    logger.warning(f"Step {step.step_number} of execution {execution.id} deferred by compliance gate until "
                   f"{execution.next_run_at}: {compliance.issues}")
    return 'deferred'


def _handle_dispatch_failure(self, execution: Execution, step, step_log: StepLog, result: DispatchResult,
                             calendar, now: datetime, claimed_version: int) -> str:
    step_log.last_error_reason = result.error
    if not result.attempted:
        step_log.attempt_count = max((step_log.attempt_count or 1) - 1, 0)
    attempts = step_log.attempt_count

    execution = self._reload_if_claimed(execution.id, claimed_version)
    if execution is None:
        db.session.commit()
        logger.info(f"Execution {step_log.execution_id} changed while step {step.step_number} was in flight; "
                    f"dispatch error recorded, execution left as it is")
        return 'superseded'

    if result.retryable and attempts < self.max_dispatch_attempts:
        execution.next_run_at = self._get_sequence_engine()._calculate_retry_run_at(
            calendar, now, attempts, self.retry_backoff_base_seconds, self.retry_backoff_max_seconds
        )
        self._release_lease(execution)
        db.session.add(Event(
            execution_id=execution.id,
            event_type='dispatch_retry_scheduled',
            timestamp=now,
            meta_json={'step_number': step.step_number, 'attempt': attempts, 'error': result.error,
                       'next_run_at': execution.next_run_at.isoformat()}
        ))
        db.session.commit()
        logger.warning(f"Dispatch of step {step.step_number} for execution {execution.id} failed "
                       f"(attempt {attempts}/{self.max_dispatch_attempts}), retry at {execution.next_run_at}: {result.error}")
        return 'retry_scheduled'

    if result.retryable:
        reason = f"Step {step.step_number} dispatch failed after {attempts} attempts: {result.error}"
    else:
        reason = f"Step {step.step_number} dispatch failed permanently: {result.error}"
    step_log.delivery_status = DeliveryStatus.FAILED
    self._finish(execution, ExecutionStatus.FAILED, reason, now)
    db.session.commit()
    execution_finished.send(self, execution_id=execution.id, status=ExecutionStatus.FAILED, reason=reason)
    logger.error(f"Execution {execution.id} failed: {reason}")
    return 'failed'


def _finish(self, execution: Execution, status: str, reason: Optional[str], now: datetime):
    """Move an execution into a final status."""
    execution.status = status
    execution.next_run_at = None
    self._release_lease(execution)
    if status == ExecutionStatus.COMPLETED:
        execution.completed_at = now
    else:
        execution.stop_reason = reason
        execution.stopped_at = now
    db.session.add(Event(
        execution_id=execution.id,
        event_type=f"execution_{status.lower()}",
        timestamp=now,
        meta_json={'reason': reason, 'step_index': execution.current_step_index}
    ))


def _fail_on_calendar_error(self, execution_id: str, error, now: datetime) -> str:
    for attempt in range(MAX_CAS_RETRIES):
        execution = db.session.get(Execution, execution_id, populate_existing=True)
        if execution is None or execution.is_final:
            return 'skipped'
        self._finish(execution, ExecutionStatus.FAILED, f"calendar configuration error: {error.message}", now)
        try:
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            continue
        execution_finished.send(self, execution_id=execution_id, status=ExecutionStatus.FAILED, reason=execution.stop_reason)
        return 'failed'
    return 'conflict'


def _poll_once(self, worker_id: str, now: Optional[datetime] = None) -> Dict[str, str]:
    """Process one batch of due executions."""
    now = now or datetime.utcnow()
    outcomes = {}
    for execution_id in self._fetch_due_executions(now):
        outcomes[execution_id] = self._process_execution(execution_id, worker_id, now)
    if outcomes:
        logger.info(f"Worker {worker_id} processed {len(outcomes)} executions")
    return outcomes
