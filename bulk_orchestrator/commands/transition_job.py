import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from bulk_orchestrator.db.models import JobEventLog
from bulk_orchestrator.db.store import JobWrite, update_with_retry
from bulk_orchestrator.domain.states import JobStatus, JobEvent, Actor, TERMINAL_STATUSES
from bulk_orchestrator.domain.transitions import plan_transition
from bulk_orchestrator.services.outbox import add_terminal_event
from bulk_orchestrator.api.v1.metrics import JOB_TERMINAL_TOTAL
from bulk_orchestrator.utils.clock import utcnow

logger = logging.getLogger(__name__)

def record_terminal(session: AsyncSession, write: JobWrite, actor: Actor) -> None:
    """Side effects of entering completed/failed: the billing event and metrics."""
    job = write.job
    add_terminal_event(session, job, write.previous_billed_successful)
    JOB_TERMINAL_TOTAL.labels(kind=job.kind, status=job.status).inc()
    logger.info(
        f"Job {job.id} {write.previous_status} -> {job.status} by {actor} "
        f"(processed={job.processed_requests}/{job.total_requests}, run={job.run})"
    )

async def transition_job(
    session: AsyncSession,
    job_id: UUID,
    requested: JobStatus,
    actor: Actor,
    event: JobEvent,
    *,
    owner: Optional[str] = None,
    error_message: Optional[str] = None,
    extra_values: Optional[dict[str, Any]] = None,
    max_retries: Optional[int] = None,
    attempts: int = 5,
) -> JobWrite:
    """
    Moves a job to `requested` through the state machine and logs `event`.
    Raises InvalidTransition (nothing written) if the edge is not allowed.
    """
    now = utcnow()

    def plan(job):
        values = plan_transition(job, requested, actor, now, error_message=error_message, max_retries=max_retries)
        if extra_values:
            values.update(extra_values)
        if requested in TERMINAL_STATUSES:
            values["billed_successful"] = values.get("successful_count", job.successful_count)
        return values

    write = await update_with_retry(session, job_id, plan, owner=owner, attempts=attempts)

    session.add(JobEventLog(
        job_id=job_id,
        event_type=event,
        timestamp=now,
        meta={
            "actor": actor,
            "from": write.previous_status,
            "to": requested,
            "error": error_message,
            "run": write.job.run,
        }
    ))

    if requested in TERMINAL_STATUSES:
        record_terminal(session, write, actor)

    return write
