"""
Unit tests for the sequence engine.

This module tests sequence definition parsing and validation, creation and
step replacement, message rendering, and step/retry timing.
"""

import pytest
from datetime import datetime, timedelta

from followup_engine.extensions import db
from followup_engine.exceptions import (
    CompanyNotFoundError,
    DuplicateSequenceError,
    ValidationError,
)
from followup_engine.models import Execution
from followup_engine.services.business_window import BusinessWindow
from followup_engine.services.sequence_engine import EXAMPLE_SEQUENCE, SequenceEngine

from tests.conftest import SUNDAY_10_DUBAI


@pytest.fixture
def engine():
    return SequenceEngine()


@pytest.fixture
def uae_window():
    return BusinessWindow([0, 1, 2, 3, 4], 8, 18, 'Asia/Dubai')


class TestParsing:
    """Test step payload parsing."""

    def test_camel_and_snake_case(self, engine):
        steps = engine.parse_steps([
            {'delayDays': 2, 'subject': 'A', 'content': 'a', 'stopConditions': ['payment_received']},
            {'delay_days': 5, 'subject': 'B', 'content': 'b', 'language': 'both', 'tone': 'formal'},
        ])
        assert [step.step_number for step in steps] == [1, 2]
        assert steps[0].delay_days == 2
        assert steps[0].stop_conditions == ['PAYMENT_RECEIVED']
        assert steps[1].language == 'BOTH'
        assert steps[1].tone == 'FORMAL'

    def test_non_object_step(self, engine):
        with pytest.raises(ValidationError):
            engine.parse_steps(['not a step'])


class TestValidation:
    """Test sequence definition validation."""

    def test_example_is_valid(self, engine):
        assert engine.validate_sequence(EXAMPLE_SEQUENCE)['valid'] is True

    def test_empty_sequence(self, engine):
        result = engine.validate_sequence([])
        assert result['valid'] is False

    def test_step_numbers_must_increase(self, engine):
        steps = [dict(EXAMPLE_SEQUENCE[0], stepNumber=2), dict(EXAMPLE_SEQUENCE[2], stepNumber=1)]
        result = engine.validate_sequence(steps)
        assert any('strictly increasing' in error for error in result['errors'])

    def test_negative_delay(self, engine):
        result = engine.validate_sequence([dict(EXAMPLE_SEQUENCE[0], delayDays=-1)])
        assert any('delayDays must be between' in error for error in result['errors'])

    def test_unknown_stop_condition(self, engine):
        result = engine.validate_sequence([dict(EXAMPLE_SEQUENCE[0], stopConditions=['MOON_PHASE'])])
        assert any('unknown stop conditions' in error for error in result['errors'])

    def test_invalid_trigger_conditions(self, engine):
        result = engine.validate_sequence(EXAMPLE_SEQUENCE, [{'type': 'DAYS_OVERDUE', 'operator': 'LIKE', 'value': 1}])
        assert any(error.startswith('Trigger conditions') for error in result['errors'])

    def test_require_bilingual(self, engine):
        result = engine.validate_sequence([EXAMPLE_SEQUENCE[0]], require_bilingual=True)
        assert result['valid'] is False


class TestCreateAndUpdate:
    """Test persisting sequence definitions."""

    def test_create_sequence(self, engine, sample_company):
        sequence = engine.create_sequence(sample_company.id, {
            'name': 'Quarter end',
            'steps': EXAMPLE_SEQUENCE,
            'cooldownHours': 48
        })
        assert sequence.revision == 1
        assert sequence.cooldown_hours == 48
        assert [step.step_number for step in sequence.steps] == [1, 2, 3]

    def test_unknown_company(self, engine, app):
        with pytest.raises(CompanyNotFoundError):
            engine.create_sequence('missing', {'name': 'x', 'steps': EXAMPLE_SEQUENCE})

    def test_duplicate_name(self, engine, sample_sequence):
        with pytest.raises(DuplicateSequenceError):
            engine.create_sequence(sample_sequence.company_id, {'name': 'Standard follow-up', 'steps': EXAMPLE_SEQUENCE})

    def test_invalid_definition_carries_errors(self, engine, sample_company):
        with pytest.raises(ValidationError) as exc_info:
            engine.create_sequence(sample_company.id, {'name': 'Broken', 'steps': [dict(EXAMPLE_SEQUENCE[0], tone='LOUD')]})
        assert exc_info.value.details['validation_errors']

    def test_replacing_steps_keeps_live_execution_index(self, engine, evaluator, scheduler,
                                                        sample_sequence, sample_invoice):
        execution = evaluator.start(sample_sequence.id, sample_invoice.id, now=SUNDAY_10_DUBAI)
        scheduler.run_once(now=SUNDAY_10_DUBAI)

        updated = engine.update_sequence(sample_sequence.id, {'steps': EXAMPLE_SEQUENCE[:2]})

        execution = db.session.get(Execution, execution.id)
        assert updated.revision == 2
        assert execution.current_step_index == 1
        assert execution.total_steps == 2
        # The step already sent keeps the content it was sent with
        assert execution.step_logs[0].subject == 'Invoice INV-1001 - friendly reminder'

    def test_update_metadata_only(self, engine, sample_sequence):
        updated = engine.update_sequence(sample_sequence.id, {'active': False, 'cooldownHours': 12})
        assert updated.active is False
        assert updated.cooldown_hours == 12
        assert updated.revision == 1


class TestRendering:
    """Test placeholder replacement and outbound composition."""

    def test_variables(self, engine, sample_invoice):
        variables = engine._build_variables(sample_invoice, SUNDAY_10_DUBAI)
        assert variables['invoiceAmount'] == '5,000.00'
        assert variables['dueDate'] == '01/03/2024'
        assert variables['daysPastDue'] == '16'
        assert variables['companyName'] == 'Gulf Trading LLC'
        assert variables['supportEmail'] == 'accounts@gulftrading.ae'

    def test_missing_customer_name(self, engine, sample_invoice):
        sample_invoice.customer_name = None
        assert engine._build_variables(sample_invoice)['customerName'] == 'Valued Customer'

    def test_unknown_placeholders_are_left(self, engine):
        text = engine._format_message('Hi {{ customerName }}, ref {{poNumber}}', {'customerName': 'Fatima'})
        assert text == 'Hi Fatima, ref {{poNumber}}'

    def test_compose_english(self, engine, sample_sequence, sample_invoice):
        step = sample_sequence.steps[0]
        subject, body = engine._compose_outbound(step, engine._render_step(step, sample_invoice, SUNDAY_10_DUBAI))
        assert subject == 'Invoice INV-1001 - friendly reminder'
        assert '{{' not in body

    def test_compose_arabic_only(self, engine, sample_sequence, sample_invoice):
        step = sample_sequence.steps[1]
        step.language = 'ARABIC'
        subject, body = engine._compose_outbound(step, engine._render_step(step, sample_invoice))
        assert subject == 'الفاتورة INV-1001'
        assert body.startswith('عزيزي Fatima Al Mansoori')

    def test_preview_step(self, engine, sample_sequence, sample_invoice):
        preview = engine.preview_step(sample_sequence, 2, sample_invoice, SUNDAY_10_DUBAI)
        assert preview['step_number'] == 3
        assert 'AED 5,000.00' in preview['body']
        assert preview['compliance']['allowed'] is True


class TestTiming:
    """Test step, retry and deferral timing."""

    def test_step_delay_is_window_aligned(self, engine, uae_window):
        # Thursday 10:00 Dubai + 1 day lands on Friday, moved to Sunday 08:00
        thursday = datetime(2024, 3, 21, 6, 0)
        assert engine._calculate_step_run_at(uae_window, thursday, 1) == datetime(2024, 3, 24, 4, 0)

    def test_zero_delay_inside_window(self, engine, uae_window):
        assert engine._calculate_step_run_at(uae_window, SUNDAY_10_DUBAI, 0) == SUNDAY_10_DUBAI

    @pytest.mark.parametrize('attempt,expected', [(1, 300), (2, 600), (3, 1200), (10, 21600)])
    def test_retry_backoff(self, engine, attempt, expected):
        assert engine._calculate_retry_backoff(attempt, 300, 21600) == expected

    def test_retry_run_at(self, engine, uae_window):
        assert engine._calculate_retry_run_at(uae_window, SUNDAY_10_DUBAI, 2, 300, 21600) == \
            SUNDAY_10_DUBAI + timedelta(seconds=600)

    def test_deferral_run_at(self, engine, uae_window):
        assert engine._calculate_deferral_run_at(uae_window, SUNDAY_10_DUBAI, 60) == \
            SUNDAY_10_DUBAI + timedelta(hours=1)
