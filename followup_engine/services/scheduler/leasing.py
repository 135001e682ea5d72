"""
Execution leasing.

This module contains functionality for:
- Claiming a short lease on an execution before dispatching its step
- Releasing the lease with the final write of a tick
- Re-reading a leased execution to check nobody else wrote to it since the claim

The claim is a single conditional UPDATE guarded by the version column, so
exactly one worker can win it for a given version of the row.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import or_

from followup_engine.extensions import db
from followup_engine.exceptions import SchedulerConflict
from followup_engine.models import Execution, ExecutionStatus

logger = logging.getLogger(__name__)


def _claim_lease(self, execution: Execution, worker_id: str, now: datetime) -> Execution:
    """Lease the execution for ``worker_id``; PENDING executions become ACTIVE with the same write."""
    values = {
        Execution.locked_by: worker_id,
        Execution.locked_until: now + timedelta(seconds=self.lease_seconds),
        Execution.version: execution.version + 1,
    }
    if execution.status == ExecutionStatus.PENDING:
        values[Execution.status] = ExecutionStatus.ACTIVE

    updated = Execution.query.filter(
        Execution.id == execution.id,
        Execution.version == execution.version,
        Execution.status.in_(ExecutionStatus.RUNNABLE),
        or_(
            Execution.locked_until.is_(None),
            Execution.locked_until <= now,
            Execution.locked_by == worker_id
        )
    ).update(values, synchronize_session=False)
    db.session.commit()

    if updated != 1:
        raise SchedulerConflict(f"Execution {execution.id} was leased or changed by another worker")

    db.session.refresh(execution)
    logger.debug(f"Worker {worker_id} leased execution {execution.id} until {execution.locked_until}")
    return execution


def _release_lease(self, execution: Execution):
    execution.locked_by = None
    execution.locked_until = None


def _reload_if_claimed(self, execution_id: str, claimed_version: int):
    """Re-read a leased execution; None when it changed after the claim or is no longer runnable."""
    execution = db.session.get(Execution, execution_id, populate_existing=True)
    if execution is None or execution.status not in ExecutionStatus.RUNNABLE:
        return None
    if execution.version != claimed_version:
        logger.info(f"Execution {execution_id} moved from version {claimed_version} to {execution.version} after the claim")
        return None
    return execution
