from datetime import datetime
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from bulk_orchestrator.db.session import Base
from bulk_orchestrator.domain.states import JobStatus, JobKind, JobEvent, OutboxStatus
from bulk_orchestrator.utils.clock import utcnow

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JsonType = JSON().with_variant(JSONB(), "postgresql")

class Job(Base):
    __tablename__ = "bulk_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner: Mapped[str] = mapped_column(String, index=True, nullable=False)
    kind: Mapped[JobKind] = mapped_column(String, nullable=False)

    # Only ever written through domain.transitions
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.PENDING, index=True)

    # Counters (monotonic, merged from worker reports)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_requests: Mapped[int] = mapped_column(Integer, default=0)
    successful_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    current_index: Mapped[int] = mapped_column(Integer, default=0)

    # Per-record inputs, with outputs merged in by index
    requests_data: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    filename: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Idempotency
    idempotency_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Failure / stop / recovery bookkeeping
    error_message: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    stop_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    run: Mapped[int] = mapped_column(Integer, default=1)
    billed_successful: Mapped[int] = mapped_column(Integer, default=0)

    # Optimistic concurrency token, bumped on every write
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    events: Mapped[list["JobEventLog"]] = relationship("JobEventLog", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        # Recovery sweep: status=processing + updated_at < cutoff
        Index("ix_bulk_jobs_status_updated", "status", "updated_at"),
        # Listing: owner's jobs newest first
        Index("ix_bulk_jobs_owner_created", "owner", "created_at"),
        # Uniqueness for idempotency (NULL keys never collide)
        Index("ix_bulk_jobs_idempotency", "owner", "idempotency_key", unique=True),
    )

class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("bulk_jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Context (actor, counters, error message, attempt number)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    job: Mapped["Job"] = relationship("Job", back_populates="events")

class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    status: Mapped[OutboxStatus] = mapped_column(String, default=OutboxStatus.PENDING, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
