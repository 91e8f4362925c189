from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from bulk_orchestrator.db.models import Job
from bulk_orchestrator.domain.models import QueueStatus
from bulk_orchestrator.domain.states import JobStatus
from bulk_orchestrator.utils.clock import ensure_aware

async def queue_status(session: AsyncSession, owner: Optional[str] = None) -> QueueStatus:
    """Counts per status plus the stalest processing heartbeat. owner=None is the operator view."""
    q_counts = select(Job.status, func.count(Job.id)).group_by(Job.status)
    q_oldest = select(func.min(Job.updated_at)).where(Job.status == JobStatus.PROCESSING)
    if owner is not None:
        q_counts = q_counts.where(Job.owner == owner)
        q_oldest = q_oldest.where(Job.owner == owner)

    status = QueueStatus()
    for job_status, count in (await session.execute(q_counts)).all():
        status.counts[str(job_status)] = count
        status.total += count

    status.oldest_processing_updated_at = ensure_aware(await session.scalar(q_oldest))
    return status

async def list_jobs(
    session: AsyncSession,
    owner: str,
    status: Optional[JobStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> Sequence[Job]:
    stmt = select(Job).where(Job.owner == owner)
    if status is not None:
        stmt = stmt.where(Job.status == status)
    stmt = stmt.order_by(Job.created_at.desc(), Job.id.desc()).limit(limit).offset(offset)
    return (await session.execute(stmt)).scalars().all()

async def find_stale_candidates(
    session: AsyncSession,
    cutoff: datetime,
    limit: int,
    after: Optional[tuple[datetime, UUID]] = None,
) -> Sequence[Job]:
    """
    Processing jobs not updated since `cutoff`, stalest first. The cutoff is
    the smallest possible threshold; callers apply the per-job one and page
    on with `after`, the (updated_at, id) of the last row they looked at.
    """
    stmt = select(Job).where(
        Job.status == JobStatus.PROCESSING,
        Job.updated_at < cutoff
    )
    if after is not None:
        after_updated_at, after_id = after
        stmt = stmt.where(or_(
            Job.updated_at > after_updated_at,
            and_(Job.updated_at == after_updated_at, Job.id > after_id),
        ))
    stmt = stmt.order_by(Job.updated_at.asc(), Job.id.asc()).limit(limit)
    return (await session.execute(stmt)).scalars().all()

async def find_pending_ids(session: AsyncSession, updated_before: datetime, limit: int) -> list[UUID]:
    stmt = (
        select(Job.id)
        .where(
            Job.status == JobStatus.PENDING,
            Job.updated_at <= updated_before
        )
        .order_by(Job.created_at.asc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())
