import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from bulk_orchestrator.db.models import JobEventLog
from bulk_orchestrator.db.store import JobWrite, update_with_retry
from bulk_orchestrator.commands.transition_job import record_terminal
from bulk_orchestrator.domain.errors import ValidationError
from bulk_orchestrator.domain.models import ProgressReport
from bulk_orchestrator.domain.progress import merge_progress
from bulk_orchestrator.domain.states import JobStatus, JobEvent, Actor, TERMINAL_STATUSES
from bulk_orchestrator.domain.transitions import plan_transition
from bulk_orchestrator.api.v1.metrics import PROGRESS_REPORTS
from bulk_orchestrator.utils.clock import utcnow

logger = logging.getLogger(__name__)

async def apply_progress(
    session: AsyncSession,
    job_id: UUID,
    report: ProgressReport,
    *,
    max_retries: Optional[int] = None,
    attempts: int = 5,
) -> JobWrite:
    """
    Merges a worker progress report into the job.

    Live jobs get their counters merged and updated_at refreshed; a terminal
    status in the report completes or fails a processing job in the same
    write. Jobs that are already terminal (stopped, failed by recovery,
    completed) still merge the counters for bookkeeping, but status,
    updated_at and billing are left alone.
    """
    if report.status is not None and JobStatus(report.status) not in TERMINAL_STATUSES:
        raise ValidationError(f"Workers may only report a terminal status, got {report.status!r}")

    now = utcnow()

    def plan(job):
        merged = merge_progress(job, report).as_values()
        current = JobStatus(job.status)

        if current in TERMINAL_STATUSES:
            changed = {k: v for k, v in merged.items() if getattr(job, k) != v}
            return changed or None

        values = dict(merged)
        if report.status is not None:
            values.update(plan_transition(
                job,
                report.status,
                Actor.WORKER,
                now,
                error_message=report.error_message or "worker reported failure",
                max_retries=max_retries,
            ))
            values["billed_successful"] = values["successful_count"]
        else:
            values["updated_at"] = now
        return values

    write = await update_with_retry(session, job_id, plan, attempts=attempts)
    job = write.job

    after_terminal = write.previous_status in TERMINAL_STATUSES
    meta = {
        "processed": job.processed_requests,
        "successful": job.successful_count,
        "failed": job.failed_count,
        "current_index": job.current_index,
        "results": len(report.results),
        "reported_status": report.status,
    }

    if after_terminal:
        # Accepted for bookkeeping only; the owner already sees a final state.
        logger.info(f"Progress for job {job_id} after it reached {write.previous_status}: {meta}")
        session.add(JobEventLog(job_id=job_id, event_type=JobEvent.PROGRESS_AFTER_TERMINAL, timestamp=now, meta=meta))
        PROGRESS_REPORTS.labels(accepted="after_terminal").inc()
        return write

    PROGRESS_REPORTS.labels(accepted="live").inc()

    if report.status is not None:
        event = JobEvent.COMPLETED if JobStatus(job.status) == JobStatus.COMPLETED else JobEvent.FAILED
        meta["actor"] = Actor.WORKER
        meta["error"] = job.error_message
        session.add(JobEventLog(job_id=job_id, event_type=event, timestamp=now, meta=meta))
        record_terminal(session, write, Actor.WORKER)
    else:
        session.add(JobEventLog(job_id=job_id, event_type=JobEvent.PROGRESS, timestamp=now, meta=meta))

    return write
