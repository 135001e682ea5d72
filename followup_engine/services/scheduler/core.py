"""
Core scheduler functionality.

This module contains the main scheduler class and core functionality:
- ExecutionScheduler class
- Worker thread management
- Main polling loop and the periodic trigger scan
- Scheduler lifecycle management
"""

import concurrent.futures
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from followup_engine.services.dispatch import Dispatcher, get_dispatcher
from followup_engine.services.sequence_engine import SequenceEngine
from followup_engine.services.triggers import TriggerEvaluator

logger = logging.getLogger(__name__)

# Global scheduler instance
_execution_scheduler = None


def get_execution_scheduler():
    """Get the global scheduler instance."""
    global _execution_scheduler
    if _execution_scheduler is None:
        _execution_scheduler = ExecutionScheduler()
    return _execution_scheduler


class ExecutionScheduler:
    """Background scheduler that advances follow-up executions.

    Several workers may poll the same store; a lease on each execution and
    the version column keep them from dispatching the same step twice.
    """

    def __init__(self, app=None, dispatcher: Optional[Dispatcher] = None):
        self.app = app
        self.dispatcher = dispatcher
        self.sequence_engine = None  # Initialize lazily
        self.trigger_evaluator = None
        self.running = False
        self.threads = []
        self._stop_event = threading.Event()
        self._dispatch_executor = None
        self._last_scan_at = None
        self._last_poll_at = None
        self._last_summary = None

        self.workers = 2
        self.dispatch_workers = 4
        self.poll_interval = 30
        self.batch_size = 50
        self.scan_interval = 3600
        self.lease_seconds = 120
        self.dispatch_timeout = 30
        self.max_dispatch_attempts = 3
        self.retry_backoff_base_seconds = 300
        self.retry_backoff_max_seconds = 21600
        self.compliance_cooldown_minutes = 60
        self.compliance_min_score = 60

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        """Initialize the scheduler with the Flask app."""
        self.app = app

        self.workers = max(1, int(app.config.get('SCHEDULER_WORKERS', 2)))
        self.dispatch_workers = max(1, int(app.config.get('DISPATCH_WORKERS', 4)))
        self.poll_interval = app.config.get('SCHEDULER_POLL_INTERVAL_SECONDS', 30)
        self.batch_size = app.config.get('SCHEDULER_BATCH_SIZE', 50)
        self.scan_interval = app.config.get('TRIGGER_SCAN_INTERVAL_SECONDS', 3600)
        self.lease_seconds = app.config.get('LEASE_SECONDS', 120)
        self.dispatch_timeout = app.config.get('DISPATCH_TIMEOUT_SECONDS', 30)
        self.max_dispatch_attempts = app.config.get('MAX_DISPATCH_ATTEMPTS', 3)
        self.retry_backoff_base_seconds = app.config.get('RETRY_BACKOFF_BASE_SECONDS', 300)
        self.retry_backoff_max_seconds = app.config.get('RETRY_BACKOFF_MAX_SECONDS', 21600)
        self.compliance_cooldown_minutes = app.config.get('COMPLIANCE_COOLDOWN_MINUTES', 60)
        self.compliance_min_score = app.config.get('COMPLIANCE_MIN_SCORE', 60)

        if self.dispatcher is None:
            self.dispatcher = get_dispatcher(app.config)
        self.trigger_evaluator = TriggerEvaluator(app.config)

        logger.info(f"Scheduler initialized with {self.workers} workers, {self.dispatch_workers} dispatch threads and "
                    f"'{getattr(self.dispatcher, 'name', 'custom')}' dispatcher")

    def _get_sequence_engine(self):
        """Get sequence engine instance (lazy initialization)."""
        if self.sequence_engine is None:
            self.sequence_engine = SequenceEngine()
        return self.sequence_engine

    def _get_trigger_evaluator(self):
        if self.trigger_evaluator is None:
            self.trigger_evaluator = TriggerEvaluator()
        return self.trigger_evaluator

    def _get_dispatch_executor(self):
        if self._dispatch_executor is None:
            self._dispatch_executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.dispatch_workers, thread_name_prefix='dispatch'
            )
        return self._dispatch_executor

    def start(self):
        """Start the background worker threads."""
        if self.running:
            logger.warning("Scheduler is already running")
            return
        if self.app is None:
            raise RuntimeError("Scheduler must be initialized with an app before starting")

        self.running = True
        self._stop_event.clear()
        self.threads = []
        for index in range(self.workers):
            worker_id = f"worker-{index}-{uuid.uuid4().hex[:8]}"
            thread = threading.Thread(
                target=self._process_loop,
                args=(worker_id, index == 0),
                name=worker_id,
                daemon=True
            )
            thread.start()
            self.threads.append(thread)
        logger.info(f"Execution scheduler started with {self.workers} workers")

    def stop(self):
        """Stop the background worker threads."""
        if not self.running:
            logger.info("Scheduler is already stopped")
            return

        logger.info("Stopping scheduler...")
        self.running = False
        self._stop_event.set()

        for thread in self.threads:
            thread.join(timeout=30)
            if thread.is_alive():
                logger.warning(f"Scheduler thread {thread.name} did not terminate within 30 seconds")
        self.threads = []

        if self._dispatch_executor is not None:
            self._dispatch_executor.shutdown(wait=False)
            self._dispatch_executor = None

        logger.info("Scheduler stopped")

    def _process_loop(self, worker_id: str, runs_trigger_scan: bool):
        """Main processing loop for one worker."""
        logger.info(f"Starting scheduler processing loop for {worker_id}")

        while not self._stop_event.is_set():
            try:
                with self.app.app_context():
                    if runs_trigger_scan:
                        self._maybe_run_trigger_scan()
                    self._poll_once(worker_id)
                    self._last_poll_at = datetime.utcnow()
            except Exception as e:
                logger.error(f"Error in scheduler processing loop ({worker_id}): {str(e)}")

            self._stop_event.wait(self.poll_interval)

        logger.info(f"Scheduler processing loop ended for {worker_id}")

    def _maybe_run_trigger_scan(self, now: Optional[datetime] = None):
        """Run the automatic trigger scan at most once per scan interval."""
        now = now or datetime.utcnow()
        if self._last_scan_at and (now - self._last_scan_at).total_seconds() < self.scan_interval:
            return None
        self._last_scan_at = now
        result = self._get_trigger_evaluator().scan(now=now)
        logger.info(f"Trigger scan started {len(result['started'])} executions, skipped {result['skipped']}")
        return result

    def run_once(self, now: Optional[datetime] = None, scan: bool = False,
                 worker_id: Optional[str] = None) -> Dict[str, Any]:
        """Run a single poll synchronously (used by the API and tests)."""
        now = now or datetime.utcnow()
        worker_id = worker_id or f"manual-{uuid.uuid4().hex[:8]}"

        scan_result = self._get_trigger_evaluator().scan(now=now) if scan else None
        outcomes = self._poll_once(worker_id, now)

        summary = {'processed': len(outcomes), 'outcomes': outcomes}
        for outcome in outcomes.values():
            summary[outcome] = summary.get(outcome, 0) + 1
        if scan_result is not None:
            summary['scan'] = scan_result
        self._last_summary = summary
        return summary

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'workers': self.workers,
            'dispatch_workers': self.dispatch_workers,
            'alive_threads': sum(1 for thread in self.threads if thread.is_alive()),
            'poll_interval_seconds': self.poll_interval,
            'batch_size': self.batch_size,
            'lease_seconds': self.lease_seconds,
            'dispatcher': getattr(self.dispatcher, 'name', type(self.dispatcher).__name__),
            'last_poll_at': self._last_poll_at.isoformat() if self._last_poll_at else None,
            'last_scan_at': self._last_scan_at.isoformat() if self._last_scan_at else None,
            'last_summary': self._last_summary
        }

    # Import other modules for functionality
    from .execution_processor import (
        _fetch_due_executions,
        _process_execution,
        _tick,
        _prepare_step_log,
        _dispatch,
        _advance,
        _defer_to_window,
        _defer_for_compliance,
        _handle_dispatch_failure,
        _finish,
        _fail_on_calendar_error,
        _poll_once,
    )
    from .leasing import _claim_lease, _release_lease, _reload_if_claimed
    from .stop_conditions import _check_stop_conditions, _has_engagement
