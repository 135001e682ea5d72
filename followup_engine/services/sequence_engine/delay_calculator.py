"""
Delay calculations and timing logic.

This module contains functionality for:
- Scheduling a step relative to the previous step's completion
- Exponential backoff for retried dispatches
- Compliance deferral timing

Every computed instant is passed through the business window so it is always
a permitted send time.
"""

import logging
from datetime import datetime, timedelta

from followup_engine.services.business_window import BusinessWindow, add_days, next_valid_instant

logger = logging.getLogger(__name__)


def _calculate_step_run_at(self, calendar: BusinessWindow, base: datetime, delay_days: int) -> datetime:
    """When a step with ``delay_days`` may fire, counting from ``base``."""
    candidate = add_days(base, max(0, delay_days or 0))
    run_at = next_valid_instant(candidate, calendar)
    logger.debug(f"Step delay {delay_days}d from {base} -> candidate {candidate} -> run at {run_at}")
    return run_at


def _calculate_retry_backoff(self, attempt: int, base_seconds: int = 300, max_seconds: int = 21600) -> int:
    """Exponential backoff in seconds for the given (1-based) failed attempt."""
    delay = base_seconds * (2 ** max(0, attempt - 1))
    return min(delay, max_seconds)


def _calculate_retry_run_at(self, calendar: BusinessWindow, now: datetime, attempt: int,
                            base_seconds: int = 300, max_seconds: int = 21600) -> datetime:
    backoff = self._calculate_retry_backoff(attempt, base_seconds, max_seconds)
    return next_valid_instant(now + timedelta(seconds=backoff), calendar)


def _calculate_deferral_run_at(self, calendar: BusinessWindow, now: datetime, cooldown_minutes: int) -> datetime:
    """Next attempt after a compliance rejection."""
    return next_valid_instant(now + timedelta(minutes=cooldown_minutes), calendar)
