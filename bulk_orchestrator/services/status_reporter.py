import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from bulk_orchestrator.db.session import AsyncSessionLocal
from bulk_orchestrator.db import queries
from bulk_orchestrator.db.store import load_job
from bulk_orchestrator.domain.models import JobSnapshot, QueueStatus
from bulk_orchestrator.domain.states import JobStatus

logger = logging.getLogger(__name__)

class StatusReporter:
    """
    Read path for polling clients. Never writes and never caches: every call
    is one store round-trip, so counters are whatever the worker last merged.
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self.session_factory = session_factory

    async def get_job(self, job_id: UUID, owner: str) -> JobSnapshot:
        """Raises JobNotFoundError for unknown ids and for other owners' jobs."""
        async with self.session_factory() as session:
            job = await load_job(session, job_id, owner)
            return JobSnapshot.from_row(job)

    async def list_jobs(
        self,
        owner: str,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
        include_records: bool = False,
    ) -> list[JobSnapshot]:
        """
        Owner's jobs, newest first. An unreachable store yields an empty list:
        the dashboard treats "no jobs yet" and "backend blip" the same way and
        simply polls again.
        """
        try:
            async with self.session_factory() as session:
                rows = await queries.list_jobs(session, owner, status=status, limit=limit, offset=offset)
                return [JobSnapshot.from_row(job, include_records=include_records) for job in rows]
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Listing jobs for {owner} failed, returning none: {e}")
            return []

    async def queue_status(self, owner: Optional[str] = None) -> QueueStatus:
        try:
            async with self.session_factory() as session:
                return await queries.queue_status(session, owner)
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Queue status for {owner or 'all owners'} failed, returning empty: {e}")
            return QueueStatus()
