from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bulk_orchestrator.db.models import Job, JobEventLog
from bulk_orchestrator.domain.errors import ValidationError
from bulk_orchestrator.domain.states import JobStatus, JobKind, JobEvent
from bulk_orchestrator.api.v1.metrics import JOBS_SUBMITTED
from bulk_orchestrator.utils.clock import utcnow

class FindRecord(BaseModel):
    # Uploaded CSVs carry arbitrary extra columns; keep them.
    model_config = ConfigDict(extra="allow")

    full_name: str
    domain: str
    role: Optional[str] = None

class VerifyRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: str

RECORD_MODELS: dict[JobKind, type[BaseModel]] = {
    JobKind.FIND: FindRecord,
    JobKind.VERIFY: VerifyRecord,
}

def validate_records(kind: str, records: Any, max_batch_size: int) -> list[dict[str, Any]]:
    try:
        kind = JobKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown job kind {kind!r}")

    if not isinstance(records, list) or not records:
        raise ValidationError("records must be a non-empty list")
    if len(records) > max_batch_size:
        raise ValidationError(f"Batch of {len(records)} records exceeds the maximum of {max_batch_size}")

    model = RECORD_MODELS[kind]
    validated = []
    for index, record in enumerate(records):
        try:
            parsed = model.model_validate(record)
        except PydanticValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) or "record" for err in e.errors())
            raise ValidationError(f"Record {index} is invalid ({fields})")
        data = parsed.model_dump(exclude_none=True)
        data["status"] = "pending"
        validated.append(data)
    return validated

async def find_by_idempotency_key(session: AsyncSession, owner: str, idempotency_key: str) -> Optional[Job]:
    stmt = select(Job).where(
        Job.owner == owner,
        Job.idempotency_key == idempotency_key
    )
    return await session.scalar(stmt)

async def create_job(
    session: AsyncSession,
    owner: str,
    kind: str,
    records: Any,
    *,
    max_batch_size: int,
    idempotency_key: Optional[str] = None,
    filename: Optional[str] = None,
) -> tuple[Job, bool]:
    """
    Creates a pending job. Returns (job, created).

    A previously seen (owner, idempotency_key) returns the existing job with
    created=False. Two concurrent submissions with the same key collide on the
    unique index; the loser gets IntegrityError at flush and the caller
    re-reads in a fresh transaction.
    """
    validated = validate_records(kind, records, max_batch_size)

    if idempotency_key:
        existing = await find_by_idempotency_key(session, owner, idempotency_key)
        if existing:
            return existing, False

    now = utcnow()
    job = Job(
        id=uuid4(),
        owner=owner,
        kind=JobKind(kind),
        status=JobStatus.PENDING,
        total_requests=len(validated),
        processed_requests=0,
        successful_count=0,
        failed_count=0,
        current_index=0,
        requests_data=validated,
        filename=filename,
        idempotency_key=idempotency_key,
        stop_requested=False,
        retry_count=0,
        run=1,
        billed_successful=0,
        version=1,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CREATED,
        timestamp=now,
        meta={"total_requests": job.total_requests, "kind": job.kind, "filename": filename}
    ))

    JOBS_SUBMITTED.labels(kind=job.kind).inc()
    return job, True
