"""
Job state machine.

Every status change goes through plan_transition(), which validates the edge
for the acting party and returns the column values to write. Callers persist
those values with a version-conditioned update (see db/store.py); nothing else
writes `status`.

    pending ──dispatcher──> processing ──worker──> completed
       │  ^                     │
  user │  │ user                └──worker / recovery / user──> failed
       v  │                                                      │
     paused          pending <──user (resubmit, not if stopped)──┘
       pending ──user (stop)──> failed
"""
from datetime import datetime
from typing import Any, Optional

from bulk_orchestrator.domain.errors import InvalidTransition, RetryBudgetExceeded
from bulk_orchestrator.domain.states import JobStatus, Actor, TERMINAL_STATUSES

ALLOWED_TRANSITIONS: dict[tuple[JobStatus, JobStatus], frozenset[Actor]] = {
    (JobStatus.PENDING, JobStatus.PROCESSING): frozenset({Actor.DISPATCHER}),
    (JobStatus.PENDING, JobStatus.PAUSED): frozenset({Actor.USER}),
    (JobStatus.PENDING, JobStatus.FAILED): frozenset({Actor.USER}),
    (JobStatus.PAUSED, JobStatus.PENDING): frozenset({Actor.USER}),
    (JobStatus.PROCESSING, JobStatus.COMPLETED): frozenset({Actor.WORKER}),
    (JobStatus.PROCESSING, JobStatus.FAILED): frozenset({Actor.WORKER, Actor.RECOVERY, Actor.USER}),
    (JobStatus.FAILED, JobStatus.PENDING): frozenset({Actor.USER}),
}

def check_transition(
    job_id,
    current: JobStatus,
    requested: JobStatus,
    actor: Actor,
    *,
    retry_count: int = 0,
    max_retries: Optional[int] = None,
    stop_requested: bool = False,
) -> None:
    """Raises InvalidTransition unless `actor` may move the job from current to requested."""
    current = JobStatus(current)
    requested = JobStatus(requested)

    actors = ALLOWED_TRANSITIONS.get((current, requested))
    if actors is None:
        raise InvalidTransition(job_id, current, requested, actor, "edge not allowed")
    if actor not in actors:
        raise InvalidTransition(job_id, current, requested, actor, f"only {', '.join(sorted(actors))} may take this edge")

    if max_retries is not None and retry_count > max_retries and requested != JobStatus.FAILED:
        raise InvalidTransition(job_id, current, requested, actor, "retry budget exceeded, only failed is allowed")

    if current == JobStatus.FAILED and requested == JobStatus.PENDING and stop_requested:
        raise InvalidTransition(job_id, current, requested, actor, "job was stopped by its owner")

def plan_transition(
    job,
    requested: JobStatus,
    actor: Actor,
    now: datetime,
    *,
    error_message: Optional[str] = None,
    max_retries: Optional[int] = None,
) -> dict[str, Any]:
    """
    Validates the transition for `job` (a Job row or anything with the same
    attributes) and returns the values to write.
    """
    current = JobStatus(job.status)
    requested = JobStatus(requested)
    check_transition(
        job.id,
        current,
        requested,
        actor,
        retry_count=job.retry_count,
        max_retries=max_retries,
        stop_requested=job.stop_requested,
    )

    values: dict[str, Any] = {"status": requested, "updated_at": now}

    if requested in TERMINAL_STATUSES:
        values["completed_at"] = now

    if requested == JobStatus.FAILED:
        values["error_message"] = error_message or "job failed"
    else:
        values["error_message"] = None

    if current == JobStatus.FAILED and requested == JobStatus.PENDING:
        # Manual resubmission starts a new run with a fresh retry budget
        values["retry_count"] = 0
        values["run"] = job.run + 1
        values["completed_at"] = None

    return values

def plan_redispatch(job, now: datetime, max_retries: int) -> dict[str, Any]:
    """
    Values for a recovery re-dispatch of a stalled processing job. The status
    stays `processing`; the refreshed updated_at keeps the next sweep away.
    """
    current = JobStatus(job.status)
    if current != JobStatus.PROCESSING:
        raise InvalidTransition(job.id, current, JobStatus.PROCESSING, Actor.RECOVERY, "only processing jobs are re-dispatched")
    if job.retry_count >= max_retries:
        raise RetryBudgetExceeded(job.id, job.retry_count, max_retries)
    return {"retry_count": job.retry_count + 1, "updated_at": now}

def plan_heartbeat(job, now: datetime) -> Optional[dict[str, Any]]:
    """Refreshes updated_at of a processing job. Anything else is left untouched."""
    if JobStatus(job.status) != JobStatus.PROCESSING:
        return None
    return {"updated_at": now}
