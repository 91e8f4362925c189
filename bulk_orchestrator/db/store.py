"""
Row-scoped optimistic access to the job table.

Each write is `UPDATE bulk_jobs SET ..., version = version + 1
WHERE id = :id AND version = :read_version`. If another writer got there
first the update matches no row; update_with_retry() then reloads the row and
asks the planner again, up to a bounded number of attempts.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bulk_orchestrator.db.models import Job
from bulk_orchestrator.domain.errors import JobNotFoundError, ConcurrencyConflict
from bulk_orchestrator.domain.states import JobStatus
from bulk_orchestrator.api.v1.metrics import CONCURRENCY_CONFLICTS

logger = logging.getLogger(__name__)

# Planner: given the freshly read row, return the values to write, or None for "nothing to do"
Planner = Callable[[Job], Optional[dict[str, Any]]]

@dataclass
class JobWrite:
    job: Job
    previous_status: JobStatus
    previous_billed_successful: int
    changed: bool

async def load_job(session: AsyncSession, job_id: UUID, owner: Optional[str] = None) -> Job:
    """
    Reads the current row, bypassing whatever the session's identity map holds.
    A job owned by someone else is reported exactly like a missing one.
    """
    stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
    job = (await session.execute(stmt)).scalar_one_or_none()

    if not job or (owner is not None and job.owner != owner):
        raise JobNotFoundError(job_id)
    return job

async def write_job(session: AsyncSession, job: Job, values: dict[str, Any]) -> bool:
    """Conditional write against the version `job` was read at. True if it landed."""
    stmt = (
        update(Job)
        .where(Job.id == job.id, Job.version == job.version)
        .values(version=job.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1

async def update_with_retry(
    session: AsyncSession,
    job_id: UUID,
    plan: Planner,
    *,
    owner: Optional[str] = None,
    attempts: int = 5,
) -> JobWrite:
    for attempt in range(1, attempts + 1):
        job = await load_job(session, job_id, owner)
        previous_status = JobStatus(job.status)
        previous_billed = job.billed_successful

        # The planner may raise (InvalidTransition, ...); nothing is written then.
        values = plan(job)
        if values is None:
            return JobWrite(job, previous_status, previous_billed, changed=False)

        if await write_job(session, job, values):
            job = await load_job(session, job_id)
            return JobWrite(job, previous_status, previous_billed, changed=True)

        CONCURRENCY_CONFLICTS.inc()
        logger.info(f"Version conflict on job {job_id} (attempt {attempt}/{attempts}), re-reading")

    raise ConcurrencyConflict(job_id, attempts)
