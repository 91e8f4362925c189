"""
Queue Manager: the write side of the orchestrator.

Stateless over the store. Every operation opens its own session from the
injected factory, so any number of orchestrator instances can serve the
same queue. Worker signals go out only after the transaction that moved the
job to processing has committed.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulk_orchestrator.db.session import AsyncSessionLocal
from bulk_orchestrator.db.models import Job, JobEventLog
from bulk_orchestrator.db import queries
from bulk_orchestrator.db.store import JobWrite, load_job
from bulk_orchestrator.commands.create_job import create_job, find_by_idempotency_key
from bulk_orchestrator.commands.dispatch_job import dispatch_job
from bulk_orchestrator.commands.transition_job import transition_job
from bulk_orchestrator.commands.apply_progress import apply_progress
from bulk_orchestrator.commands.heartbeat import heartbeat
from bulk_orchestrator.domain.errors import InvalidTransition, WorkerUnreachable, JobNotFoundError
from bulk_orchestrator.domain.models import JobSnapshot, ProgressReport, QueueStatus
from bulk_orchestrator.domain.retry import backoff_delay
from bulk_orchestrator.domain.states import JobStatus, JobEvent, Actor, STOPPED_BY_USER
from bulk_orchestrator.services.signaler import WorkerSignaler
from bulk_orchestrator.settings import settings as default_settings, Settings
from bulk_orchestrator.api.v1.metrics import WORKER_SIGNAL_FAILURES
from bulk_orchestrator.utils.clock import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

class QueueManager:
    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        signaler: Optional[WorkerSignaler] = None,
        settings: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.signaler = signaler or WorkerSignaler(settings)

    async def run_in_transaction(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Runs `work` in its own transaction. Dropped connections and similar
        transient store errors are retried with backoff, then re-raised. That
        includes socket errors the driver raises before SQLAlchemy can wrap
        them, such as a refused connect.
        Everything else (domain errors included) propagates at once.
        """
        attempts = max(self.settings.STORE_RETRY_ATTEMPTS, 1)
        for attempt in range(attempts):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        return await work(session)
            except (DBAPIError, OSError) as e:
                if isinstance(e, DBAPIError) and not (isinstance(e, OperationalError) or e.connection_invalidated):
                    raise
                if attempt + 1 >= attempts:
                    logger.error(f"Store unavailable after {attempts} attempts: {e}")
                    raise
                logger.warning(f"Transient store error (attempt {attempt + 1}/{attempts}): {e}")
                await asyncio.sleep(backoff_delay(attempt, base_delay_seconds=self.settings.STORE_RETRY_BACKOFF_SECONDS))

    async def record_rejection(self, exc: InvalidTransition) -> None:
        """State machine violations are never silent: log with context and keep an audit row."""
        logger.warning(
            f"Rejected transition for job {exc.job_id}: {exc.current} -> {exc.requested} by {exc.actor} ({exc})"
        )

        async def work(session):
            session.add(JobEventLog(
                job_id=exc.job_id,
                event_type=JobEvent.TRANSITION_REJECTED,
                timestamp=utcnow(),
                meta={"from": exc.current, "to": exc.requested, "actor": exc.actor, "reason": str(exc)}
            ))

        try:
            await self.run_in_transaction(work)
        except Exception as e:
            logger.error(f"Could not record rejected transition for job {exc.job_id}: {e}")

    async def _guarded(self, work: Callable[[AsyncSession], Awaitable[JobWrite]]) -> JobWrite:
        try:
            return await self.run_in_transaction(work)
        except InvalidTransition as exc:
            await self.record_rejection(exc)
            raise

    async def signal_worker(self, job: Job) -> bool:
        """Signals the worker. A failure is recorded and left to recovery; it never fails the caller."""
        try:
            await self.signaler.signal(job)
            return True
        except WorkerUnreachable as e:
            WORKER_SIGNAL_FAILURES.labels(kind=job.kind).inc()
            logger.warning(f"{e}; job {job.id} stays {job.status} until recovery re-drives it")

            async def work(session):
                session.add(JobEventLog(
                    job_id=job.id,
                    event_type=JobEvent.SIGNAL_FAILED,
                    timestamp=utcnow(),
                    meta={"url": e.url, "error": str(e), "retry_count": job.retry_count}
                ))

            try:
                await self.run_in_transaction(work)
            except Exception as log_error:
                logger.error(f"Could not record signal failure for job {job.id}: {log_error}")
            return False

    # --- Submission ---

    async def _submit(
        self,
        owner: str,
        kind: str,
        records: Any,
        idempotency_key: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Job:
        async def work(session):
            job, created = await create_job(
                session,
                owner,
                kind,
                records,
                max_batch_size=self.settings.MAX_BATCH_SIZE,
                idempotency_key=idempotency_key,
                filename=filename,
            )
            if created:
                logger.info(f"Created {job.kind} job {job.id} for {owner} ({job.total_requests} records)")
            else:
                logger.info(f"Idempotent replay of key {idempotency_key!r} for {owner}; returning job {job.id}")
            return job

        try:
            return await self.run_in_transaction(work)
        except IntegrityError:
            if not idempotency_key:
                raise

            # Lost the race against a concurrent submit with the same key
            async def lookup(session):
                return await find_by_idempotency_key(session, owner, idempotency_key)

            existing = await self.run_in_transaction(lookup)
            if existing is None:
                raise
            return existing

    async def submit(
        self,
        owner: str,
        kind: str,
        records: Any,
        idempotency_key: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> UUID:
        """Creates a pending job and returns its id. Raises ValidationError on bad input."""
        job = await self._submit(owner, kind, records, idempotency_key, filename)
        return job.id

    async def submit_and_dispatch(
        self,
        owner: str,
        kind: str,
        records: Any,
        idempotency_key: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> UUID:
        """
        submit() followed by dispatch(). If the dispatch cannot be written the
        job stays pending and the scheduler's pending sweep picks it up.
        """
        job = await self._submit(owner, kind, records, idempotency_key, filename)
        if JobStatus(job.status) != JobStatus.PENDING:
            # Idempotent replay of a job that already moved on
            return job.id
        try:
            await self.dispatch(job.id, owner=owner)
        except (OperationalError, OSError) as e:
            logger.warning(f"Dispatch of new job {job.id} deferred: {e}")
        return job.id

    # --- Dispatch ---

    async def dispatch(self, job_id: UUID, owner: Optional[str] = None) -> JobSnapshot:
        """
        pending -> processing, then signal the worker. Already processing is a
        no-op and sends nothing.
        """
        write = await self._guarded(lambda session: dispatch_job(
            session,
            job_id,
            owner=owner,
            max_retries=self.settings.MAX_RETRIES,
            attempts=self.settings.CONCURRENCY_RETRY_ATTEMPTS,
        ))
        if write.changed:
            await self.signal_worker(write.job)
        return JobSnapshot.from_row(write.job, include_records=False)

    async def dispatch_pending(
        self,
        limit: int = 100,
        older_than: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Dispatches pending jobs, oldest first. Returns how many were handed to a worker."""
        now = now or utcnow()
        cutoff = now - (older_than or timedelta(0))

        async def work(session):
            return await queries.find_pending_ids(session, cutoff, limit)

        dispatched = 0
        for job_id in await self.run_in_transaction(work):
            try:
                snapshot = await self.dispatch(job_id)
            except (InvalidTransition, JobNotFoundError) as e:
                # Paused or stopped between the read and the dispatch
                logger.info(f"Skipping pending job {job_id}: {e}")
                continue
            if snapshot.status == JobStatus.PROCESSING:
                dispatched += 1
        if dispatched:
            logger.info(f"Dispatched {dispatched} pending jobs")
        return dispatched

    # --- Caller actions ---

    async def stop(self, job_id: UUID, owner: str) -> JobSnapshot:
        """
        Fails a pending or processing job with "stopped by user". A remote
        worker mid-batch is not interrupted; its later reports are merged for
        bookkeeping but never revive the job.
        """
        write = await self._guarded(lambda session: transition_job(
            session,
            job_id,
            JobStatus.FAILED,
            Actor.USER,
            JobEvent.STOPPED,
            owner=owner,
            error_message=STOPPED_BY_USER,
            extra_values={"stop_requested": True},
            max_retries=self.settings.MAX_RETRIES,
            attempts=self.settings.CONCURRENCY_RETRY_ATTEMPTS,
        ))
        return JobSnapshot.from_row(write.job, include_records=False)

    async def pause(self, job_id: UUID, owner: str) -> JobSnapshot:
        write = await self._guarded(lambda session: transition_job(
            session, job_id, JobStatus.PAUSED, Actor.USER, JobEvent.PAUSED,
            owner=owner, attempts=self.settings.CONCURRENCY_RETRY_ATTEMPTS,
        ))
        return JobSnapshot.from_row(write.job, include_records=False)

    async def resume(self, job_id: UUID, owner: str) -> JobSnapshot:
        write = await self._guarded(lambda session: transition_job(
            session, job_id, JobStatus.PENDING, Actor.USER, JobEvent.RESUMED,
            owner=owner, attempts=self.settings.CONCURRENCY_RETRY_ATTEMPTS,
        ))
        return JobSnapshot.from_row(write.job, include_records=False)

    async def resubmit(self, job_id: UUID, owner: str) -> JobSnapshot:
        """failed -> pending with a fresh retry budget. The worker resumes from current_index."""
        write = await self._guarded(lambda session: transition_job(
            session, job_id, JobStatus.PENDING, Actor.USER, JobEvent.RESUBMITTED,
            owner=owner, attempts=self.settings.CONCURRENCY_RETRY_ATTEMPTS,
        ))
        return JobSnapshot.from_row(write.job, include_records=False)

    # --- Worker callbacks ---

    async def apply_progress(self, job_id: UUID, report: ProgressReport) -> JobSnapshot:
        write = await self._guarded(lambda session: apply_progress(
            session,
            job_id,
            report,
            max_retries=self.settings.MAX_RETRIES,
            attempts=self.settings.CONCURRENCY_RETRY_ATTEMPTS,
        ))
        return JobSnapshot.from_row(write.job, include_records=False)

    async def heartbeat(self, job_id: UUID) -> JobSnapshot:
        write = await self.run_in_transaction(lambda session: heartbeat(
            session, job_id, attempts=self.settings.CONCURRENCY_RETRY_ATTEMPTS
        ))
        return JobSnapshot.from_row(write.job, include_records=False)

    async def get_job_for_worker(self, job_id: UUID) -> JobSnapshot:
        async def work(session):
            return JobSnapshot.from_row(await load_job(session, job_id))
        return await self.run_in_transaction(work)

    # --- Aggregates ---

    async def get_queue_status(self, owner: Optional[str] = None) -> QueueStatus:
        """Counts per status for `owner`, or across all owners when None."""
        return await self.run_in_transaction(lambda session: queries.queue_status(session, owner))
