"""
Unit tests for the trigger evaluator.

This module tests starting executions (including the single live execution
rule under a concurrent start), eligibility rules, stop/pause/resume,
status queries, trigger conditions and automatic triggering.
"""

import pytest
from datetime import date, datetime, timedelta

from followup_engine.exceptions import (
    ConflictError,
    IneligibleInvoiceError,
    InvoiceNotFoundError,
    SequenceInactiveError,
    SequenceNotFoundError,
    ValidationError,
)
from followup_engine.models import (
    EmailSuppression,
    Event,
    Execution,
    ExecutionStatus,
    Invoice,
    InvoiceStatus,
    StepLog,
)
from followup_engine.services.triggers import Operator, TriggerCondition, TriggerType
from followup_engine.services.triggers.conditions import parse_conditions

from tests.conftest import SUNDAY_10_DUBAI


class TestStart:
    """Test starting a sequence for an invoice."""

    def test_start_creates_pending_execution(self, evaluator, sample_sequence, sample_invoice):
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)

        assert execution.status == ExecutionStatus.PENDING
        assert execution.current_step_index == 0
        assert execution.total_steps == 3
        assert execution.next_run_at == SUNDAY_10_DUBAI
        assert execution.trigger_type == 'MANUAL'
        assert execution.sequence_revision == sample_sequence.revision

        event = Event.query.filter_by(execution_id=execution.id, event_type='sequence_triggered').first()
        assert event is not None

    def test_start_immediately_is_active_and_window_aligned(self, evaluator, sample_sequence, sample_invoice):
        friday_15_dubai = datetime(2024, 3, 15, 11, 0)
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, start_immediately=True, now=friday_15_dubai)

        assert execution.status == ExecutionStatus.ACTIVE
        assert execution.next_run_at == datetime(2024, 3, 17, 4, 0)

    def test_custom_start_time_is_window_aligned(self, evaluator, sample_sequence, sample_invoice):
        execution = evaluator.start(
            sample_sequence.id, sample_invoice.id,
            custom_start_time=datetime(2024, 3, 18, 2, 0),
            now=SUNDAY_10_DUBAI
        )
        assert execution.next_run_at == datetime(2024, 3, 18, 4, 0)

    def test_second_start_raises_conflict_with_existing_id(self, evaluator, sample_sequence, sample_invoice):
        first = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)

        with pytest.raises(ConflictError) as exc_info:
            evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)

        assert exc_info.value.existing_execution_id == first.id

    def test_concurrent_start_loses_to_unique_index(self, app, evaluator, sample_sequence, sample_invoice):
        """
        Two starts that both pass the live-execution lookup: the second insert
        hits the live-pair index and reports the first execution's id.
        """
        from followup_engine.services.triggers import TriggerEvaluator

        first = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)

        racer = TriggerEvaluator(app.config)
        real_lookup = racer._find_live_execution
        calls = []

        def blind_first_lookup(sequence_id, invoice_id):
            calls.append((sequence_id, invoice_id))
            if len(calls) == 1:
                return None
            return real_lookup(sequence_id, invoice_id)

        racer._find_live_execution = blind_first_lookup

        with pytest.raises(ConflictError) as exc_info:
            racer.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)

        assert exc_info.value.existing_execution_id == first.id
        live = Execution.query.filter(
            Execution.sequence_id == sample_sequence.id,
            Execution.invoice_id == sample_invoice.id,
            Execution.status.in_(ExecutionStatus.LIVE)
        ).all()
        assert [execution.id for execution in live] == [first.id]

    def test_restart_after_stop_is_allowed(self, evaluator, sample_sequence, sample_invoice):
        first = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)
        evaluator.stop(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)

        second = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI + timedelta(hours=1))
        assert second.id != first.id

    def test_unknown_sequence(self, evaluator, sample_invoice):
        with pytest.raises(SequenceNotFoundError):
            evaluator.start('missing-sequence', sample_invoice.id)

    def test_unknown_invoice(self, evaluator, sample_sequence):
        with pytest.raises(InvoiceNotFoundError):
            evaluator.start(sample_sequence.id, 'missing-invoice')

    def test_inactive_sequence(self, evaluator, db_session, sample_sequence, sample_invoice):
        sample_sequence.active = False
        db_session.commit()
        with pytest.raises(SequenceInactiveError):
            evaluator.start(sample_sequence.id, sample_invoice.id)


class TestEligibility:
    """Test the invoice eligibility rules."""

    @pytest.mark.parametrize('status', [
        InvoiceStatus.PAID, InvoiceStatus.WRITTEN_OFF, InvoiceStatus.CANCELLED, InvoiceStatus.DISPUTED
    ])
    def test_stopping_statuses_are_never_eligible(self, evaluator, db_session, sample_sequence, sample_invoice, status):
        sample_invoice.status = status
        db_session.commit()
        with pytest.raises(IneligibleInvoiceError):
            evaluator.start(sample_sequence.id, sample_invoice.id, skip_validation=True)

    def test_fully_paid_overdue_invoice_is_not_eligible(self, evaluator, db_session, sample_sequence, sample_invoice):
        """Payments covering the amount count even while the status still says OVERDUE."""
        sample_invoice.amount_paid = 5000.0
        db_session.commit()
        with pytest.raises(IneligibleInvoiceError) as exc_info:
            evaluator.start(sample_sequence.id, sample_invoice.id, skip_validation=True)
        assert 'nothing outstanding' in exc_info.value.reason

    def test_missing_recipient(self, evaluator, db_session, sample_sequence, sample_invoice):
        sample_invoice.customer_email = None
        db_session.commit()
        with pytest.raises(IneligibleInvoiceError) as exc_info:
            evaluator.start(sample_sequence.id, sample_invoice.id, skip_validation=True)
        assert 'recipient' in exc_info.value.reason

    def test_suppressed_recipient(self, evaluator, db_session, sample_sequence, sample_invoice):
        db_session.add(EmailSuppression(email='fatima@customer.ae', reason='unsubscribed'))
        db_session.commit()
        with pytest.raises(IneligibleInvoiceError):
            evaluator.start(sample_sequence.id, sample_invoice.id)

    def test_amount_below_minimum(self, evaluator, db_session, sample_sequence, sample_invoice):
        sample_invoice.amount = 5.0
        db_session.commit()
        with pytest.raises(IneligibleInvoiceError):
            evaluator.start(sample_sequence.id, sample_invoice.id)

    def test_skip_validation_bypasses_soft_rules(self, evaluator, db_session, sample_sequence, sample_invoice):
        sample_invoice.amount = 5.0
        db_session.commit()
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, skip_validation=True)
        assert execution.status == ExecutionStatus.PENDING

    def test_condition_not_met(self, evaluator, sample_sequence, sample_invoice):
        condition = TriggerCondition(TriggerType.DAYS_OVERDUE, Operator.GREATER_THAN, 30)
        with pytest.raises(IneligibleInvoiceError) as exc_info:
            evaluator.start(sample_sequence.id, sample_invoice.id, condition=condition, now=SUNDAY_10_DUBAI)
        assert 'trigger condition not met' in exc_info.value.reason

    def test_daily_message_limit(self, evaluator, db_session, sample_sequence, sample_invoice):
        other = Execution(
            company_id=sample_sequence.company_id,
            sequence_id=sample_sequence.id,
            invoice_id=sample_invoice.id,
            status=ExecutionStatus.COMPLETED,
            total_steps=3
        )
        db_session.add(other)
        db_session.flush()
        for step_number in range(1, 4):
            db_session.add(StepLog(
                execution_id=other.id,
                step_number=step_number,
                dispatch_token=f"token-{step_number}",
                dispatch_ref=f"ref-{step_number}",
                recipient='fatima@customer.ae',
                sent_at=SUNDAY_10_DUBAI - timedelta(hours=step_number)
            ))
        db_session.commit()

        with pytest.raises(IneligibleInvoiceError) as exc_info:
            evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)
        assert 'daily message limit' in exc_info.value.reason


class TestStopPauseResume:
    """Test execution control."""

    def test_stop_marks_stopped_with_reason(self, evaluator, sample_sequence, sample_invoice):
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)

        result = evaluator.stop(sample_sequence.id, sample_invoice.id, reason='customer called', now=SUNDAY_10_DUBAI)

        assert result == {'stopped': True, 'execution_id': execution.id}
        assert execution.status == ExecutionStatus.STOPPED
        assert execution.stop_reason == 'customer called'
        assert execution.next_run_at is None

    def test_stop_is_idempotent(self, evaluator, sample_sequence, sample_invoice):
        evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)
        evaluator.stop(sample_sequence.id, sample_invoice.id)

        result = evaluator.stop(sample_sequence.id, sample_invoice.id)
        assert result['stopped'] is False
        assert result['message'] == 'No active sequence found for this invoice'

    def test_stop_without_execution(self, evaluator, sample_sequence, sample_invoice):
        assert evaluator.stop(sample_sequence.id, sample_invoice.id)['stopped'] is False

    def test_pause_requires_active_execution(self, evaluator, sample_sequence, sample_invoice):
        evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)
        assert evaluator.pause(sample_sequence.id, sample_invoice.id)['paused'] is False

    def test_pause_and_resume(self, evaluator, sample_sequence, sample_invoice):
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, start_immediately=True, now=SUNDAY_10_DUBAI)

        assert evaluator.pause(sample_sequence.id, sample_invoice.id)['paused'] is True
        assert execution.status == ExecutionStatus.PAUSED

        # Resumed on Friday afternoon: the next run moves to Sunday's opening
        result = evaluator.resume(sample_sequence.id, sample_invoice.id, now=datetime(2024, 3, 22, 11, 0))
        assert result['resumed'] is True
        assert execution.status == ExecutionStatus.ACTIVE
        assert execution.next_run_at == datetime(2024, 3, 24, 4, 0)

    def test_paused_execution_still_blocks_new_start(self, evaluator, sample_sequence, sample_invoice):
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, start_immediately=True, now=SUNDAY_10_DUBAI)
        evaluator.pause(sample_sequence.id, sample_invoice.id)

        with pytest.raises(ConflictError) as exc_info:
            evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)
        assert exc_info.value.existing_execution_id == execution.id

    def test_stop_applies_to_paused_execution(self, evaluator, sample_sequence, sample_invoice):
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, start_immediately=True, now=SUNDAY_10_DUBAI)
        evaluator.pause(sample_sequence.id, sample_invoice.id)

        assert evaluator.stop(sample_sequence.id, sample_invoice.id)['stopped'] is True
        assert execution.status == ExecutionStatus.STOPPED


class TestStatus:
    """Test execution status queries."""

    def test_no_execution(self, evaluator, sample_sequence, sample_invoice):
        assert evaluator.status(sample_sequence.id, sample_invoice.id) == {'has_execution': False}

    def test_live_execution(self, evaluator, sample_sequence, sample_invoice):
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)
        status = evaluator.status(sample_sequence.id, sample_invoice.id)
        assert status['has_execution'] is True
        assert status['execution']['id'] == execution.id
        assert status['step_logs'] == []

    def test_latest_finished_execution(self, evaluator, sample_sequence, sample_invoice):
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)
        evaluator.stop(sample_sequence.id, sample_invoice.id, reason='manual')

        status = evaluator.status(sample_sequence.id, sample_invoice.id)
        assert status['execution']['id'] == execution.id
        assert status['execution']['status'] == ExecutionStatus.STOPPED
        assert status['execution']['stop_reason'] == 'manual'


class TestTriggerConditions:
    """Test the trigger condition variant."""

    def test_days_overdue(self, sample_invoice):
        condition = TriggerCondition(TriggerType.DAYS_OVERDUE, Operator.GREATER_THAN, 7)
        assert condition.evaluate(sample_invoice, SUNDAY_10_DUBAI) is True   # 16 days overdue
        assert condition.actual_value(sample_invoice, SUNDAY_10_DUBAI) == 16

    def test_due_date_counts_down(self, sample_invoice):
        condition = TriggerCondition(TriggerType.DUE_DATE, Operator.LESS_THAN, 0)
        assert condition.evaluate(sample_invoice, SUNDAY_10_DUBAI) is True

    def test_invoice_status_in(self, sample_invoice):
        condition = TriggerCondition(TriggerType.INVOICE_STATUS, Operator.IN, ('OVERDUE', 'PARTIALLY_PAID'))
        assert condition.evaluate(sample_invoice) is True

    def test_invoice_status_not_in(self, sample_invoice):
        condition = TriggerCondition(TriggerType.INVOICE_STATUS, Operator.NOT_IN, ('OVERDUE',))
        assert condition.evaluate(sample_invoice) is False

    def test_payment_received_equals(self, sample_invoice):
        condition = TriggerCondition(TriggerType.PAYMENT_RECEIVED, Operator.EQUALS, 0)
        assert condition.evaluate(sample_invoice) is True

    def test_missing_due_date_never_matches(self, db_session, sample_invoice):
        sample_invoice.due_date = None
        db_session.commit()
        condition = TriggerCondition(TriggerType.DUE_DATE, Operator.LESS_THAN, 100)
        assert condition.evaluate(sample_invoice) is False

    def test_manual_always_matches(self, sample_invoice):
        assert TriggerCondition.manual('called customer').evaluate(sample_invoice) is True

    def test_from_dict_round_trip(self):
        data = {'type': 'days_overdue', 'operator': 'greater_than', 'value': 14}
        condition = TriggerCondition.from_dict(data)
        assert condition.type == TriggerType.DAYS_OVERDUE
        assert condition.to_dict() == {'type': 'DAYS_OVERDUE', 'operator': 'GREATER_THAN', 'value': 14}

    @pytest.mark.parametrize('data', [
        {'type': 'UNKNOWN', 'operator': 'EQUALS', 'value': 1},
        {'type': 'DAYS_OVERDUE', 'operator': 'LIKE', 'value': 1},
        {'type': 'DAYS_OVERDUE', 'value': 1},
        {'type': 'DAYS_OVERDUE', 'operator': 'IN', 'value': 1},
        {'type': 'DAYS_OVERDUE', 'operator': 'GREATER_THAN', 'value': 'ten'},
        {'type': 'INVOICE_STATUS', 'operator': 'EQUALS', 'value': 'LATE'},
        {'type': 'INVOICE_STATUS', 'operator': 'GREATER_THAN', 'value': 'OVERDUE'},
    ])
    def test_invalid_conditions_are_rejected(self, data):
        with pytest.raises(ValidationError):
            TriggerCondition.from_dict(data)

    def test_parse_conditions_accepts_empty(self):
        assert parse_conditions(None) == []


class TestAutomaticTriggers:
    """Test the automatic scan and invoice status changes."""

    def test_scan_starts_matching_invoices(self, evaluator, db_session, sample_sequence, sample_invoice):
        sample_sequence.trigger_conditions = [{'type': 'DAYS_OVERDUE', 'operator': 'GREATER_THAN', 'value': 7}]
        db_session.commit()

        result = evaluator.scan(now=SUNDAY_10_DUBAI)

        assert len(result['started']) == 1
        execution = db_session.get(Execution, result['started'][0])
        assert execution.trigger_type == 'DAYS_OVERDUE'

    def test_scan_skips_non_matching_invoices(self, evaluator, db_session, sample_sequence, sample_invoice):
        sample_sequence.trigger_conditions = [{'type': 'DAYS_OVERDUE', 'operator': 'GREATER_THAN', 'value': 30}]
        db_session.commit()
        assert evaluator.scan(now=SUNDAY_10_DUBAI)['started'] == []

    def test_scan_ignores_sequences_without_conditions(self, evaluator, sample_sequence, sample_invoice):
        assert evaluator.scan(now=SUNDAY_10_DUBAI) == {'started': [], 'skipped': 0}

    def test_scan_respects_cooldown(self, evaluator, db_session, sample_sequence, sample_invoice):
        sample_sequence.trigger_conditions = [{'type': 'INVOICE_STATUS', 'operator': 'EQUALS', 'value': 'OVERDUE'}]
        db_session.commit()

        evaluator.scan(now=SUNDAY_10_DUBAI)
        evaluator.stop(sample_sequence.id, sample_invoice.id)

        result = evaluator.scan(now=SUNDAY_10_DUBAI + timedelta(hours=2))
        assert result['started'] == []
        assert result['skipped'] == 1

    def test_scan_skips_pairs_with_live_execution(self, evaluator, db_session, sample_sequence, sample_invoice):
        sample_sequence.trigger_conditions = [{'type': 'INVOICE_STATUS', 'operator': 'EQUALS', 'value': 'OVERDUE'}]
        sample_sequence.cooldown_hours = 0
        db_session.commit()

        evaluator.scan(now=SUNDAY_10_DUBAI)
        result = evaluator.scan(now=SUNDAY_10_DUBAI + timedelta(hours=2))
        assert result['started'] == []
        assert result['skipped'] == 1

    def test_payment_stops_live_executions(self, evaluator, sample_sequence, sample_invoice):
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)

        result = evaluator.handle_invoice_status_change(sample_invoice.id, 'paid', amount_paid=5000.0)

        assert result['previous_status'] == InvoiceStatus.OVERDUE
        assert result['stopped_executions'] == [execution.id]
        assert execution.status == ExecutionStatus.STOPPED
        assert execution.stop_reason == 'payment_received'

    def test_full_payment_recorded_as_partial_stops_live_executions(self, evaluator, sample_sequence, sample_invoice):
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)

        result = evaluator.handle_invoice_status_change(sample_invoice.id, InvoiceStatus.PARTIALLY_PAID,
                                                        amount_paid=5000.0)

        assert result['stopped_executions'] == [execution.id]
        assert execution.status == ExecutionStatus.STOPPED
        assert execution.stop_reason == 'payment_received'

    def test_dispute_stops_live_executions(self, evaluator, sample_sequence, sample_invoice):
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)
        evaluator.handle_invoice_status_change(sample_invoice.id, InvoiceStatus.DISPUTED)
        assert execution.stop_reason == 'dispute_opened'

    def test_becoming_overdue_triggers_scan(self, evaluator, db_session, sample_company, sample_sequence):
        sample_sequence.trigger_conditions = [{'type': 'INVOICE_STATUS', 'operator': 'EQUALS', 'value': 'OVERDUE'}]
        invoice = Invoice(
            company_id=sample_company.id,
            number='INV-2002',
            customer_email='omar@customer.ae',
            amount=1200.0,
            due_date=date(2024, 3, 10),
            status=InvoiceStatus.SENT
        )
        db_session.add(invoice)
        db_session.commit()

        result = evaluator.handle_invoice_status_change(invoice.id, InvoiceStatus.OVERDUE, now=SUNDAY_10_DUBAI)
        assert len(result['triggered_executions']) == 1

    def test_unknown_status(self, evaluator, sample_invoice):
        with pytest.raises(ValidationError):
            evaluator.handle_invoice_status_change(sample_invoice.id, 'LATE')
