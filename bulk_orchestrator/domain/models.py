from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any
from uuid import UUID

from bulk_orchestrator.domain.states import JobStatus, JobKind
from bulk_orchestrator.utils.clock import ensure_aware

@dataclass
class RecordResult:
    """Outcome of one record, merged into requests_data[index]."""
    index: int
    data: dict[str, Any]

@dataclass
class ProgressReport:
    """
    A worker progress report.

    Cumulative fields (processed/successful/failed) are merged with max(),
    delta fields are added. A report may carry either or both.
    """
    processed: Optional[int] = None
    successful: Optional[int] = None
    failed: Optional[int] = None

    processed_delta: int = 0
    successful_delta: int = 0
    failed_delta: int = 0

    current_index: Optional[int] = None
    status: Optional[JobStatus] = None
    error_message: Optional[str] = None
    results: list[RecordResult] = field(default_factory=list)

@dataclass
class JobSnapshot:
    id: UUID
    owner: str
    kind: JobKind
    status: JobStatus
    total_requests: int
    processed_requests: int
    successful_count: int
    failed_count: int
    current_index: int
    retry_count: int
    run: int
    stop_requested: bool
    filename: Optional[str]
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime]
    requests_data: Optional[list[dict[str, Any]]] = None

    @property
    def progress(self) -> float:
        if not self.total_requests:
            return 0.0
        return round(100.0 * self.processed_requests / self.total_requests, 2)

    @classmethod
    def from_row(cls, job, include_records: bool = True) -> "JobSnapshot":
        return cls(
            id=job.id,
            owner=job.owner,
            kind=JobKind(job.kind),
            status=JobStatus(job.status),
            total_requests=job.total_requests,
            processed_requests=job.processed_requests,
            successful_count=job.successful_count,
            failed_count=job.failed_count,
            current_index=job.current_index,
            retry_count=job.retry_count,
            run=job.run,
            stop_requested=job.stop_requested,
            filename=job.filename,
            error_message=job.error_message,
            created_at=ensure_aware(job.created_at),
            updated_at=ensure_aware(job.updated_at),
            completed_at=ensure_aware(job.completed_at),
            # Copy so callers never hold a reference into the row
            requests_data=[dict(r) for r in job.requests_data] if include_records else None,
        )

@dataclass
class QueueStatus:
    counts: dict[str, int] = field(default_factory=lambda: {s.value: 0 for s in JobStatus})
    total: int = 0
    oldest_processing_updated_at: Optional[datetime] = None

@dataclass
class SweepResult:
    scanned: int = 0
    redispatched: int = 0
    failed: int = 0
    skipped: int = 0
    signal_failures: int = 0
