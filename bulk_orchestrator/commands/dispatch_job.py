from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from bulk_orchestrator.db.models import JobEventLog
from bulk_orchestrator.db.store import JobWrite, update_with_retry
from bulk_orchestrator.domain.states import JobStatus, JobEvent, Actor
from bulk_orchestrator.domain.transitions import plan_transition
from bulk_orchestrator.api.v1.metrics import JOB_DISPATCH_COUNT
from bulk_orchestrator.utils.clock import utcnow

async def dispatch_job(
    session: AsyncSession,
    job_id: UUID,
    *,
    owner: Optional[str] = None,
    max_retries: Optional[int] = None,
    attempts: int = 5,
    now: Optional[datetime] = None,
) -> JobWrite:
    """
    Moves a pending job to processing. The caller signals the worker after
    commit, and only when write.changed is True.

    A job that is already processing is a no-op (changed=False): dispatch
    signals may be delivered more than once. Any other status raises
    InvalidTransition.
    """
    now = now or utcnow()

    def plan(job):
        if JobStatus(job.status) == JobStatus.PROCESSING:
            return None
        return plan_transition(job, JobStatus.PROCESSING, Actor.DISPATCHER, now, max_retries=max_retries)

    write = await update_with_retry(session, job_id, plan, owner=owner, attempts=attempts)

    if write.changed:
        session.add(JobEventLog(
            job_id=job_id,
            event_type=JobEvent.DISPATCHED,
            timestamp=now,
            meta={"run": write.job.run, "start_index": write.job.current_index}
        ))
        JOB_DISPATCH_COUNT.labels(kind=write.job.kind, result="dispatched").inc()
    else:
        JOB_DISPATCH_COUNT.labels(kind=write.job.kind, result="noop").inc()

    return write
