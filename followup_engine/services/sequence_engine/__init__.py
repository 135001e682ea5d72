"""
Sequence engine services package.

This package contains organized sequence engine functionality:
- core.py: Main sequence engine class, definition parsing and validation
- message_formatter.py: Placeholder substitution and outbound message composition
- delay_calculator.py: Step, retry and deferral timing
- engagement.py: Delivery and engagement event tracking
"""

from .core import SequenceEngine, EXAMPLE_SEQUENCE
from .engagement import EngagementTracker, EngagementOutcome

# Export the main sequence engine class, example sequence and engagement tracker
__all__ = ['SequenceEngine', 'EXAMPLE_SEQUENCE', 'EngagementTracker', 'EngagementOutcome']
