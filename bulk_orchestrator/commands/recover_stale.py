import logging
from datetime import datetime
from enum import StrEnum, auto

from sqlalchemy.ext.asyncio import AsyncSession

from bulk_orchestrator.db.models import Job, JobEventLog
from bulk_orchestrator.db.store import JobWrite, write_job, load_job
from bulk_orchestrator.commands.transition_job import record_terminal
from bulk_orchestrator.domain.errors import RetryBudgetExceeded
from bulk_orchestrator.domain.states import JobStatus, JobEvent, Actor, EXCEEDED_RETRY_BUDGET
from bulk_orchestrator.domain.transitions import plan_redispatch, plan_transition
from bulk_orchestrator.api.v1.metrics import RECOVERY_REDISPATCHED, RECOVERY_FAILED

logger = logging.getLogger(__name__)

class RecoveryOutcome(StrEnum):
    REDISPATCHED = auto()
    FAILED = auto()
    SKIPPED = auto()   # Row changed since the sweep read it: the worker is alive

async def recover_stale_job(
    session: AsyncSession,
    job: Job,
    now: datetime,
    max_retries: int
) -> tuple[RecoveryOutcome, Job]:
    """
    Re-drives one stalled processing job, as read by the sweep.

    The write is conditioned on the version the sweep read, so a progress
    report that lands in between wins and the job is skipped. No re-read and
    retry here: a changed row means the job is not stalled any more.
    """
    try:
        values = plan_redispatch(job, now, max_retries)
        outcome = RecoveryOutcome.REDISPATCHED
    except RetryBudgetExceeded as e:
        logger.warning(str(e))
        values = plan_transition(
            job,
            JobStatus.FAILED,
            Actor.RECOVERY,
            now,
            error_message=EXCEEDED_RETRY_BUDGET,
            max_retries=max_retries,
        )
        values["billed_successful"] = job.successful_count
        outcome = RecoveryOutcome.FAILED

    previous_status = JobStatus(job.status)
    previous_billed = job.billed_successful
    stale_since = job.updated_at

    if not await write_job(session, job, values):
        logger.info(f"Job {job.id} changed since the sweep read it; leaving it to its worker")
        return RecoveryOutcome.SKIPPED, job

    job = await load_job(session, job.id)

    if outcome == RecoveryOutcome.REDISPATCHED:
        session.add(JobEventLog(
            job_id=job.id,
            event_type=JobEvent.REDISPATCHED,
            timestamp=now,
            meta={"retry_count": job.retry_count, "max_retries": max_retries, "stale_since": str(stale_since)}
        ))
        RECOVERY_REDISPATCHED.inc()
        logger.info(f"Re-dispatching stalled job {job.id} (retry {job.retry_count}/{max_retries})")
    else:
        session.add(JobEventLog(
            job_id=job.id,
            event_type=JobEvent.FAILED,
            timestamp=now,
            meta={
                "actor": Actor.RECOVERY,
                "error": EXCEEDED_RETRY_BUDGET,
                "retry_count": job.retry_count,
                "stale_since": str(stale_since)
            }
        ))
        record_terminal(session, JobWrite(job, previous_status, previous_billed, changed=True), Actor.RECOVERY)
        RECOVERY_FAILED.inc()

    return outcome, job
