"""
Signals emitted by the execution scheduler.

Receivers are called synchronously in the worker that made the change, after
the change is committed.
"""

from blinker import Namespace

engine_signals = Namespace()

# sender: ExecutionScheduler; kwargs: execution_id, step_number, dispatch_ref
step_completed = engine_signals.signal('step-completed')

# sender: ExecutionScheduler or TriggerEvaluator; kwargs: execution_id, status, reason
execution_finished = engine_signals.signal('execution-finished')
