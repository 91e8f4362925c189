from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import OperationalError

from bulk_orchestrator.api.deps import Manager, Reporter
from bulk_orchestrator.api.v1.errors import to_http
from bulk_orchestrator.auth.security import get_current_owner
from bulk_orchestrator.domain.errors import JobError
from bulk_orchestrator.domain.models import JobSnapshot
from bulk_orchestrator.domain.states import JobStatus, JobKind

router = APIRouter()

DEFER_DISPATCH_HELP = (
    "false only defers dispatch: the job stays pending until the scheduler's "
    "pending sweep dispatches it, PENDING_DISPATCH_GRACE_SECONDS later. "
    "Pause the job to hold it."
)

class JobCreate(BaseModel):
    kind: JobKind
    records: list[dict[str, Any]]
    idempotency_key: Optional[str] = None
    filename: Optional[str] = None
    dispatch: bool = Field(default=True, description=DEFER_DISPATCH_HELP)

class JobResponse(BaseModel):
    id: UUID
    kind: JobKind
    status: JobStatus
    total_requests: int
    processed_requests: int
    successful_count: int
    failed_count: int
    current_index: int
    progress: float
    retry_count: int
    run: int
    filename: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    requests_data: Optional[list[dict[str, Any]]] = None
    model_config = ConfigDict(from_attributes=True)

class QueueStatusResponse(BaseModel):
    counts: dict[str, int]
    total: int
    oldest_processing_updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

def _response(snapshot: JobSnapshot) -> JobResponse:
    return JobResponse.model_validate(snapshot)

@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def submit_job(
    payload: JobCreate,
    manager: Manager,
    reporter: Reporter,
    owner: str = Depends(get_current_owner),
):
    """
    Creates a job and dispatches it. With dispatch=false the job is created
    pending and is still dispatched by the scheduler after the grace period.
    """
    try:
        if payload.dispatch:
            job_id = await manager.submit_and_dispatch(
                owner, payload.kind, payload.records, payload.idempotency_key, payload.filename
            )
        else:
            job_id = await manager.submit(
                owner, payload.kind, payload.records, payload.idempotency_key, payload.filename
            )
        return _response(await reporter.get_job(job_id, owner))
    except (JobError, OperationalError, OSError) as e:
        raise to_http(e)

@router.get("", response_model=list[JobResponse])
async def list_jobs(
    reporter: Reporter,
    owner: str = Depends(get_current_owner),
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    include_records: bool = False,
):
    jobs = await reporter.list_jobs(owner, status=status_filter, limit=limit, offset=offset, include_records=include_records)
    return [_response(job) for job in jobs]

@router.get("/status", response_model=QueueStatusResponse)
async def owner_queue_status(reporter: Reporter, owner: str = Depends(get_current_owner)):
    return QueueStatusResponse.model_validate(await reporter.queue_status(owner))

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, reporter: Reporter, owner: str = Depends(get_current_owner)):
    try:
        return _response(await reporter.get_job(job_id, owner))
    except (JobError, OperationalError, OSError) as e:
        raise to_http(e)

@router.post("/{job_id}/dispatch", response_model=JobResponse)
async def dispatch_job(job_id: UUID, manager: Manager, owner: str = Depends(get_current_owner)):
    try:
        return _response(await manager.dispatch(job_id, owner=owner))
    except (JobError, OperationalError, OSError) as e:
        raise to_http(e)

@router.post("/{job_id}/stop", response_model=JobResponse)
async def stop_job(job_id: UUID, manager: Manager, owner: str = Depends(get_current_owner)):
    try:
        return _response(await manager.stop(job_id, owner))
    except (JobError, OperationalError, OSError) as e:
        raise to_http(e)

@router.post("/{job_id}/pause", response_model=JobResponse)
async def pause_job(job_id: UUID, manager: Manager, owner: str = Depends(get_current_owner)):
    try:
        return _response(await manager.pause(job_id, owner))
    except (JobError, OperationalError, OSError) as e:
        raise to_http(e)

@router.post("/{job_id}/resume", response_model=JobResponse)
async def resume_job(
    job_id: UUID,
    manager: Manager,
    owner: str = Depends(get_current_owner),
    dispatch: bool = Query(True, description=DEFER_DISPATCH_HELP),
):
    """dispatch=false leaves the job pending for the scheduler's pending sweep."""
    try:
        snapshot = await manager.resume(job_id, owner)
        if dispatch:
            snapshot = await manager.dispatch(job_id, owner=owner)
        return _response(snapshot)
    except (JobError, OperationalError, OSError) as e:
        raise to_http(e)

@router.post("/{job_id}/resubmit", response_model=JobResponse)
async def resubmit_job(
    job_id: UUID,
    manager: Manager,
    owner: str = Depends(get_current_owner),
    dispatch: bool = Query(True, description=DEFER_DISPATCH_HELP),
):
    """dispatch=false leaves the job pending for the scheduler's pending sweep."""
    try:
        snapshot = await manager.resubmit(job_id, owner)
        if dispatch:
            snapshot = await manager.dispatch(job_id, owner=owner)
        return _response(snapshot)
    except (JobError, OperationalError, OSError) as e:
        raise to_http(e)
