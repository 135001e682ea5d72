"""
Scheduler services package.

This package contains organized scheduler functionality:
- core.py: Main scheduler class, worker threads and lifecycle
- execution_processor.py: Per-execution tick, dispatch, retries and advancement
- leasing.py: Execution lease claim and release
- stop_conditions.py: Stop checks evaluated before each step
"""

from .core import ExecutionScheduler, get_execution_scheduler
from .execution_processor import dispatch_token_for

__all__ = ['ExecutionScheduler', 'get_execution_scheduler', 'dispatch_token_for']
