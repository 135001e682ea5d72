"""
Trigger services package.

This package contains organized trigger functionality:
- core.py: TriggerEvaluator (start, stop, pause, resume, status)
- conditions.py: TriggerCondition variant and evaluation
- eligibility.py: Invoice eligibility checks and live execution lookup
- automatic.py: Automatic trigger scan and invoice status change handling
"""

from .conditions import TriggerCondition, TriggerType, Operator
from .core import TriggerEvaluator

__all__ = ['TriggerEvaluator', 'TriggerCondition', 'TriggerType', 'Operator']
