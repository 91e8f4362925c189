from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from bulk_orchestrator.db.store import JobWrite, update_with_retry
from bulk_orchestrator.domain.transitions import plan_heartbeat
from bulk_orchestrator.utils.clock import utcnow

async def heartbeat(session: AsyncSession, job_id: UUID, attempts: int = 5) -> JobWrite:
    """
    Refreshes updated_at of a processing job so the recovery sweep leaves it
    alone. Heartbeats for jobs in any other status are ignored (changed=False);
    in particular a terminal job's updated_at never moves again.
    """
    now = utcnow()
    return await update_with_retry(session, job_id, lambda job: plan_heartbeat(job, now), attempts=attempts)
