import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from bulk_orchestrator.db import queries
from bulk_orchestrator.domain.models import SweepResult
from bulk_orchestrator.services.queue_manager import QueueManager
from bulk_orchestrator.services.recovery import StuckJobRecovery
from bulk_orchestrator.api.v1.metrics import QUEUE_JOBS, OLDEST_PROCESSING_AGE
from bulk_orchestrator.utils.clock import utcnow

logger = logging.getLogger(__name__)

async def run_leader_tasks(recovery: StuckJobRecovery, queue_manager: QueueManager) -> SweepResult:
    """
    Periodic maintenance, run by the leader only:
    1. Recover stalled processing jobs (re-signal or fail)
    2. Dispatch pending jobs nobody dispatched (lost submit-time dispatch, resumed jobs)
    """
    result = await recovery.sweep()

    grace = timedelta(seconds=queue_manager.settings.PENDING_DISPATCH_GRACE_SECONDS)
    await queue_manager.dispatch_pending(
        limit=queue_manager.settings.RECOVERY_BATCH_SIZE,
        older_than=grace,
    )
    return result

async def run_metrics_tasks(session: AsyncSession) -> None:
    """Refreshes queue gauges. Runs on every instance so each /metrics is current."""
    status = await queries.queue_status(session)
    for job_status, count in status.counts.items():
        QUEUE_JOBS.labels(status=job_status).set(count)

    if status.oldest_processing_updated_at is None:
        OLDEST_PROCESSING_AGE.set(0)
    else:
        OLDEST_PROCESSING_AGE.set((utcnow() - status.oldest_processing_updated_at).total_seconds())
