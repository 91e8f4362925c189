from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import OperationalError

from bulk_orchestrator.api.deps import Manager
from bulk_orchestrator.api.v1.errors import to_http
from bulk_orchestrator.auth.security import verify_worker_signature
from bulk_orchestrator.domain.errors import JobError
from bulk_orchestrator.domain.models import JobSnapshot, ProgressReport, RecordResult
from bulk_orchestrator.domain.states import JobStatus, JobKind

router = APIRouter()

class RecordResultIn(BaseModel):
    index: int = Field(ge=0)
    data: dict[str, Any]

class ProgressRequest(BaseModel):
    # Cumulative counters (merged with max) and/or deltas (added)
    processed: Optional[int] = Field(None, ge=0)
    successful: Optional[int] = Field(None, ge=0)
    failed: Optional[int] = Field(None, ge=0)
    processed_delta: int = Field(0, ge=0)
    successful_delta: int = Field(0, ge=0)
    failed_delta: int = Field(0, ge=0)
    current_index: Optional[int] = Field(None, ge=0)
    status: Optional[Literal["completed", "failed"]] = None
    error_message: Optional[str] = None
    results: list[RecordResultIn] = []

    def to_report(self) -> ProgressReport:
        return ProgressReport(
            processed=self.processed,
            successful=self.successful,
            failed=self.failed,
            processed_delta=self.processed_delta,
            successful_delta=self.successful_delta,
            failed_delta=self.failed_delta,
            current_index=self.current_index,
            status=JobStatus(self.status) if self.status else None,
            error_message=self.error_message,
            results=[RecordResult(index=r.index, data=r.data) for r in self.results],
        )

class WorkerJobDTO(BaseModel):
    """What a worker sees: enough to process (or resume) the batch and to notice a stop."""
    id: UUID
    kind: JobKind
    owner: str
    status: JobStatus
    total_requests: int
    processed_requests: int
    successful_count: int
    failed_count: int
    current_index: int
    retry_count: int
    run: int
    stop_requested: bool
    updated_at: datetime
    requests_data: Optional[list[dict[str, Any]]] = None
    model_config = ConfigDict(from_attributes=True)

def _dto(snapshot: JobSnapshot) -> WorkerJobDTO:
    return WorkerJobDTO.model_validate(snapshot)

@router.get("/{job_id}", response_model=WorkerJobDTO)
async def fetch_job(job_id: UUID, manager: Manager, worker_id: Optional[str] = Depends(verify_worker_signature)):
    try:
        return _dto(await manager.get_job_for_worker(job_id))
    except (JobError, OperationalError, OSError) as e:
        raise to_http(e)

@router.post("/{job_id}/progress", response_model=WorkerJobDTO)
async def report_progress(
    job_id: UUID,
    body: ProgressRequest,
    manager: Manager,
    worker_id: Optional[str] = Depends(verify_worker_signature),
):
    try:
        return _dto(await manager.apply_progress(job_id, body.to_report()))
    except (JobError, OperationalError, OSError) as e:
        raise to_http(e)

@router.post("/{job_id}/heartbeat", response_model=WorkerJobDTO)
async def job_heartbeat(job_id: UUID, manager: Manager, worker_id: Optional[str] = Depends(verify_worker_signature)):
    try:
        return _dto(await manager.heartbeat(job_id))
    except (JobError, OperationalError, OSError) as e:
        raise to_http(e)
