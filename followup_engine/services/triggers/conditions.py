"""
Trigger condition definitions.

A trigger condition is a closed variant: its type names the invoice attribute
being inspected and its operator the comparison applied against ``value``.
Conditions are validated when they are built so evaluation never meets an
unknown combination.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from followup_engine.exceptions import ValidationError
from followup_engine.models import Invoice
from followup_engine.models.invoice import InvoiceStatus

logger = logging.getLogger(__name__)


class TriggerType(str, Enum):
    MANUAL = 'MANUAL'
    INVOICE_STATUS = 'INVOICE_STATUS'
    DUE_DATE = 'DUE_DATE'              # days until the due date (negative once overdue)
    DAYS_OVERDUE = 'DAYS_OVERDUE'      # whole days past the due date, never negative
    PAYMENT_RECEIVED = 'PAYMENT_RECEIVED'  # amount paid so far


class Operator(str, Enum):
    EQUALS = 'EQUALS'
    GREATER_THAN = 'GREATER_THAN'
    LESS_THAN = 'LESS_THAN'
    IN = 'IN'
    NOT_IN = 'NOT_IN'


NUMERIC_TYPES = (TriggerType.DUE_DATE, TriggerType.DAYS_OVERDUE, TriggerType.PAYMENT_RECEIVED)
LIST_OPERATORS = (Operator.IN, Operator.NOT_IN)


@dataclass(frozen=True)
class TriggerCondition:
    type: TriggerType
    operator: Optional[Operator] = None
    value: Any = None

    def __post_init__(self):
        if self.type == TriggerType.MANUAL:
            return
        if self.operator is None:
            raise ValidationError(f"Trigger condition {self.type.value} requires an operator")

        if self.operator in LIST_OPERATORS:
            if not isinstance(self.value, (list, tuple)) or not self.value:
                raise ValidationError(f"Operator {self.operator.value} requires a non-empty list value")
            values = list(self.value)
        else:
            if isinstance(self.value, (list, tuple)):
                raise ValidationError(f"Operator {self.operator.value} requires a single value")
            values = [self.value]

        if self.type == TriggerType.INVOICE_STATUS:
            if self.operator in (Operator.GREATER_THAN, Operator.LESS_THAN):
                raise ValidationError("INVOICE_STATUS conditions only support EQUALS, IN and NOT_IN")
            unknown = [v for v in values if v not in InvoiceStatus.ALL]
            if unknown:
                raise ValidationError(f"Unknown invoice status value(s): {unknown}")
        elif self.type in NUMERIC_TYPES:
            for v in values:
                if isinstance(v, bool) or not isinstance(v, (int, float)):
                    raise ValidationError(f"{self.type.value} conditions require numeric values, got {v!r}")

    @classmethod
    def manual(cls, reason: Optional[str] = None) -> 'TriggerCondition':
        return cls(type=TriggerType.MANUAL, value=reason)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TriggerCondition':
        """Build a condition from a JSON payload (``type``, ``operator``, ``value``)."""
        if not isinstance(data, dict):
            raise ValidationError("Trigger condition must be an object")
        try:
            trigger_type = TriggerType(str(data.get('type', '')).upper())
        except ValueError:
            raise ValidationError(f"Unknown trigger type '{data.get('type')}'")

        operator = data.get('operator')
        if operator is not None:
            try:
                operator = Operator(str(operator).upper())
            except ValueError:
                raise ValidationError(f"Unknown trigger operator '{operator}'")

        value = data.get('value')
        if isinstance(value, list):
            value = tuple(value)
        return cls(type=trigger_type, operator=operator, value=value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'operator': self.operator.value if self.operator else None,
            'value': list(self.value) if isinstance(self.value, tuple) else self.value
        }

    def actual_value(self, invoice: Invoice, now: Optional[datetime] = None):
        """The invoice attribute this condition compares against."""
        now = now or datetime.utcnow()
        if self.type == TriggerType.INVOICE_STATUS:
            return invoice.status
        if self.type == TriggerType.DUE_DATE:
            if not invoice.due_date:
                return None
            return (invoice.due_date - now.date()).days
        if self.type == TriggerType.DAYS_OVERDUE:
            return invoice.days_overdue(now)
        if self.type == TriggerType.PAYMENT_RECEIVED:
            return invoice.amount_paid or 0.0
        raise ValidationError(f"Trigger type {self.type.value} has no invoice attribute")

    def evaluate(self, invoice: Invoice, now: Optional[datetime] = None) -> bool:
        """Check whether the invoice satisfies this condition."""
        if self.type == TriggerType.MANUAL:
            return True

        actual = self.actual_value(invoice, now)
        if actual is None:
            logger.info(f"Condition {self.type.value} cannot be evaluated for invoice {invoice.id}: missing data")
            return False

        if self.operator == Operator.EQUALS:
            return actual == self.value
        if self.operator == Operator.GREATER_THAN:
            return actual > self.value
        if self.operator == Operator.LESS_THAN:
            return actual < self.value
        if self.operator == Operator.IN:
            return actual in self.value
        if self.operator == Operator.NOT_IN:
            return actual not in self.value
        raise ValidationError(f"Unsupported operator {self.operator}")

    def describe(self) -> str:
        if self.type == TriggerType.MANUAL:
            return f"MANUAL ({self.value})" if self.value else 'MANUAL'
        return f"{self.type.value} {self.operator.value} {self.to_dict()['value']}"


def parse_conditions(raw) -> list:
    """Parse a stored or submitted list of condition payloads."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("Trigger conditions must be a list")
    return [TriggerCondition.from_dict(item) for item in raw]
