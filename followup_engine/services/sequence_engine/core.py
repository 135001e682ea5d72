"""
Core sequence engine functionality.

This module contains the main sequence engine class and core functionality:
- SequenceEngine class
- Sequence definition parsing and validation
- Sequence creation and step replacement
- Step rendering (via message_formatter) and timing (via delay_calculator)
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from followup_engine.extensions import db
from followup_engine.exceptions import (
    CompanyNotFoundError,
    DuplicateSequenceError,
    SequenceNotFoundError,
    ValidationError,
)
from followup_engine.models import Company, Execution, ExecutionStatus, Sequence, SequenceStep
from followup_engine.models.sequence import StepLanguage, StepTone, StopConditionTag
from followup_engine.services.compliance import ComplianceGate
from followup_engine.services.triggers.conditions import parse_conditions

logger = logging.getLogger(__name__)

MAX_STEPS = 20
MAX_DELAY_DAYS = 365

# Example three-step UAE follow-up sequence
EXAMPLE_SEQUENCE = [
    {
        "delayDays": 0,
        "subject": "Invoice {{invoiceNumber}} - friendly reminder",
        "content": (
            "Dear {{customerName}},\n\n"
            "We hope this finds you well. Kindly note that invoice {{invoiceNumber}} for "
            "{{currency}} {{invoiceAmount}} was due on {{dueDate}}. We would appreciate settlement "
            "at your convenience.\n\nThank you for your continued partnership.\nBest regards,\n{{companyName}}"
        ),
        "language": "ENGLISH",
        "tone": "FRIENDLY",
        "stopConditions": ["PAYMENT_RECEIVED", "CUSTOMER_RESPONSE"]
    },
    {
        "delayDays": 7,
        "subject": "Invoice {{invoiceNumber}} - pending payment",
        "content": (
            "Dear {{customerName}},\n\n"
            "Invoice {{invoiceNumber}} for {{currency}} {{invoiceAmount}} is now {{daysPastDue}} days "
            "past its due date. Kindly arrange payment, or please contact {{supportEmail}} if any "
            "clarification is needed.\n\nThank you for your attention.\nRegards,\n{{companyName}}"
        ),
        "subjectAr": "الفاتورة {{invoiceNumber}} - دفعة معلقة",
        "contentAr": (
            "عزيزي {{customerName}}،\n\n"
            "نود تذكيركم بأن الفاتورة {{invoiceNumber}} بمبلغ {{currency}} {{invoiceAmount}} "
            "لا تزال معلقة. نرجو التكرم بترتيب السداد.\n\nشكراً لتعاونكم.\n{{companyName}}"
        ),
        "language": "BOTH",
        "tone": "BUSINESS",
        "stopConditions": ["PAYMENT_RECEIVED", "PARTIAL_PAYMENT", "CUSTOMER_RESPONSE"]
    },
    {
        "delayDays": 14,
        "subject": "Invoice {{invoiceNumber}} - settlement request",
        "content": (
            "Dear {{customerName}},\n\n"
            "We respectfully request settlement of invoice {{invoiceNumber}} for {{currency}} "
            "{{outstandingAmount}}, now {{daysPastDue}} days past due. We would appreciate hearing "
            "from you regarding a payment arrangement.\n\nThank you for your cooperation.\n"
            "Sincerely,\n{{companyName}}"
        ),
        "language": "ENGLISH",
        "tone": "FORMAL",
        "stopConditions": ["PAYMENT_RECEIVED", "DISPUTE_OPENED"]
    }
]


def _field(step: Dict[str, Any], camel: str, snake: str, default=None):
    if camel in step:
        return step[camel]
    return step.get(snake, default)


class SequenceEngine:
    """Engine for defining follow-up sequences and rendering their steps."""

    def parse_steps(self, raw_steps: List[Dict[str, Any]]) -> List[SequenceStep]:
        """Build unsaved SequenceStep rows from a request payload (camelCase or snake_case keys)."""
        steps = []
        for index, raw in enumerate(raw_steps or []):
            if not isinstance(raw, dict):
                raise ValidationError(f"Step {index + 1}: must be an object")
            steps.append(SequenceStep(
                step_number=_field(raw, 'stepNumber', 'step_number', index + 1),
                delay_days=_field(raw, 'delayDays', 'delay_days', 0),
                subject=raw.get('subject'),
                content=raw.get('content'),
                subject_ar=_field(raw, 'subjectAr', 'subject_ar'),
                content_ar=_field(raw, 'contentAr', 'content_ar'),
                language=str(raw.get('language') or StepLanguage.ENGLISH).upper(),
                tone=str(raw.get('tone') or StepTone.BUSINESS).upper(),
                stop_conditions=[str(tag).upper() for tag in (_field(raw, 'stopConditions', 'stop_conditions') or [])],
                step_metadata=raw.get('metadata') or {},
            ))
        return steps

    def validate_sequence(self, raw_steps: List[Dict[str, Any]], trigger_conditions=None,
                          require_bilingual: bool = False) -> Dict[str, Any]:
        """Validate a sequence definition."""
        errors = []
        warnings = []

        if not isinstance(raw_steps, list) or not raw_steps:
            errors.append("Sequence must have at least one step")
            return {'valid': False, 'errors': errors, 'warnings': warnings}

        if len(raw_steps) > MAX_STEPS:
            errors.append(f"Sequence cannot have more than {MAX_STEPS} steps")

        try:
            steps = self.parse_steps(raw_steps)
        except ValidationError as e:
            return {'valid': False, 'errors': [e.message], 'warnings': warnings}

        gate = ComplianceGate(require_bilingual=require_bilingual)
        previous_number = 0
        for step in steps:
            label = f"Step {step.step_number}"

            if not isinstance(step.step_number, int) or step.step_number <= previous_number:
                errors.append(f"{label}: step numbers must be strictly increasing integers")
            else:
                previous_number = step.step_number

            if isinstance(step.delay_days, bool) or not isinstance(step.delay_days, int):
                errors.append(f"{label}: delayDays must be an integer")
            elif step.delay_days < 0 or step.delay_days > MAX_DELAY_DAYS:
                errors.append(f"{label}: delayDays must be between 0 and {MAX_DELAY_DAYS}")

            if step.language not in StepLanguage.ALL:
                errors.append(f"{label}: invalid language '{step.language}'")
                continue
            if step.tone not in StepTone.ORDER:
                errors.append(f"{label}: invalid tone '{step.tone}'")
                continue

            unknown_tags = [tag for tag in step.stop_conditions if tag not in StopConditionTag.ALL]
            if unknown_tags:
                errors.append(f"{label}: unknown stop conditions {unknown_tags}")

            compliance = gate.validate_template(step)
            errors.extend(f"{label}: {issue}" for issue in compliance.issues)
            warnings.extend(f"{label}: {suggestion}" for suggestion in compliance.suggestions)

        if not errors:
            warnings.extend(gate.validate_tone_escalation(steps))

        try:
            parse_conditions(trigger_conditions)
        except ValidationError as e:
            errors.append(f"Trigger conditions: {e.message}")

        return {
            'valid': len(errors) == 0,
            'errors': errors,
            'warnings': warnings
        }

    def create_sequence(self, company_id: str, data: Dict[str, Any]) -> Sequence:
        """Validate and persist a new sequence definition for a company."""
        company = db.session.get(Company, company_id)
        if not company:
            raise CompanyNotFoundError(company_id)

        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError("Sequence name is required")

        raw_steps = data.get('steps')
        trigger_conditions = _field(data, 'triggerConditions', 'trigger_conditions')
        result = self.validate_sequence(raw_steps, trigger_conditions, company.require_bilingual)
        if not result['valid']:
            raise ValidationError("Invalid sequence definition", {
                'validation_errors': result['errors'],
                'warnings': result['warnings']
            })

        if Sequence.query.filter_by(company_id=company_id, name=name).first():
            raise DuplicateSequenceError(name)

        sequence = Sequence(
            company_id=company_id,
            name=name,
            description=data.get('description'),
            active=bool(data.get('active', True)),
            trigger_conditions=[c.to_dict() for c in parse_conditions(trigger_conditions)],
            cooldown_hours=int(_field(data, 'cooldownHours', 'cooldown_hours', 24)),
        )
        sequence.steps = self.parse_steps(raw_steps)
        db.session.add(sequence)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateSequenceError(name)

        logger.info(f"Created sequence {sequence.id} '{name}' with {len(sequence.steps)} steps for company {company_id}")
        return sequence

    def update_sequence(self, sequence_id: str, data: Dict[str, Any]) -> Sequence:
        """
        Update a sequence. Replacing the steps bumps the revision; executions
        already in flight keep their index and the StepLogs they wrote keep
        the content that was actually sent.
        """
        sequence = db.session.get(Sequence, sequence_id)
        if not sequence:
            raise SequenceNotFoundError(sequence_id)

        if 'steps' in data or 'triggerConditions' in data or 'trigger_conditions' in data:
            raw_steps = data.get('steps', [step.to_dict() for step in sequence.steps])
            trigger_conditions = _field(data, 'triggerConditions', 'trigger_conditions', sequence.trigger_conditions)
            result = self.validate_sequence(raw_steps, trigger_conditions, sequence.company.require_bilingual)
            if not result['valid']:
                raise ValidationError("Invalid sequence definition", {
                    'validation_errors': result['errors'],
                    'warnings': result['warnings']
                })
            sequence.trigger_conditions = [c.to_dict() for c in parse_conditions(trigger_conditions)]

            if 'steps' in data:
                sequence.steps = []
                db.session.flush()
                sequence.steps = self.parse_steps(raw_steps)
                sequence.revision = (sequence.revision or 1) + 1
                self._resize_live_executions(sequence)

        if 'name' in data:
            name = (data.get('name') or '').strip()
            if not name:
                raise ValidationError("Sequence name is required")
            sequence.name = name
        if 'description' in data:
            sequence.description = data.get('description')
        if 'active' in data:
            sequence.active = bool(data['active'])
        cooldown = _field(data, 'cooldownHours', 'cooldown_hours')
        if cooldown is not None:
            sequence.cooldown_hours = int(cooldown)

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateSequenceError(data.get('name'))

        logger.info(f"Updated sequence {sequence.id} (revision {sequence.revision})")
        return sequence

    def _resize_live_executions(self, sequence: Sequence):
        """Keep total_steps consistent for in-flight executions after a step replacement."""
        live = Execution.query.filter(
            Execution.sequence_id == sequence.id,
            Execution.status.in_(ExecutionStatus.LIVE)
        ).all()
        for execution in live:
            execution.total_steps = max(execution.current_step_index, len(sequence.steps))

    def get_sequence_info(self, sequence: Sequence) -> Dict[str, Any]:
        """Summary of a sequence with its calendar."""
        return {
            'sequence': sequence.to_dict(),
            'total_steps': sequence.total_steps,
            'calendar': sequence.company.calendar_config().describe()
        }

    def preview_step(self, sequence: Sequence, step_index: int, invoice, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Render a step for an invoice without sending it."""
        if step_index < 0 or step_index >= len(sequence.steps):
            raise ValidationError(f"Step index {step_index} out of range")
        step = sequence.steps[step_index]
        rendered = self._render_step(step, invoice, now)
        subject, body = self._compose_outbound(step, rendered)
        compliance = ComplianceGate(require_bilingual=sequence.company.require_bilingual).validate(step, rendered)
        return {
            'step_number': step.step_number,
            'subject': subject,
            'body': body,
            'language': step.language,
            'compliance': compliance.to_dict()
        }

    # Import functionality from other modules
    from .message_formatter import _build_variables, _format_message, _render_step, _compose_outbound
    from .delay_calculator import (
        _calculate_step_run_at,
        _calculate_retry_backoff,
        _calculate_retry_run_at,
        _calculate_deferral_run_at,
    )
