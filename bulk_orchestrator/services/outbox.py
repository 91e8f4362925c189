import asyncio
import logging
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulk_orchestrator.db.session import AsyncSessionLocal
from bulk_orchestrator.db.models import Job, OutboxEvent
from bulk_orchestrator.domain.states import OutboxStatus, TERMINAL_EVENT_TYPE
from bulk_orchestrator.settings import settings as default_settings, Settings
from bulk_orchestrator.utils.clock import utcnow, ensure_aware

logger = logging.getLogger(__name__)

def add_terminal_event(session: AsyncSession, job: Job, previously_billed: int) -> OutboxEvent:
    """
    Queues the "job reached terminal state" event for billing, exactly once
    per run of a job rather than once per job id. A job failed and then
    resubmitted reaches a terminal state again under run n+1 and emits a
    second event. Consumers bill the sum of `successful_delta` over a job's
    events: each delta counts only the successes since the previous run's
    event, so the sum equals the job's final successful_count.

    Written in the same transaction as the terminal transition, so the event
    exists if and only if the transition committed. The dedupe key
    `<job_id>:<run>` makes a second insert for the same run fail loudly
    instead of double billing.
    """
    completed_at = ensure_aware(job.completed_at)
    event = OutboxEvent(
        event_type=TERMINAL_EVENT_TYPE,
        dedupe_key=f"{job.id}:{job.run}",
        payload={
            "job_id": str(job.id),
            "owner": job.owner,
            "kind": str(job.kind),
            "status": str(job.status),
            "run": job.run,
            "processed_requests": job.processed_requests,
            "successful_count": job.successful_count,
            "failed_count": job.failed_count,
            "successful_delta": max(job.successful_count - previously_billed, 0),
            "error_message": job.error_message,
            "completed_at": completed_at.isoformat() if completed_at else None,
        },
        status=OutboxStatus.PENDING,
        attempts=0,
        created_at=utcnow(),
    )
    session.add(event)
    return event

class OutboxProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        settings: Settings = default_settings,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.interval = settings.OUTBOX_INTERVAL_SECONDS
        self.client = client or httpx.AsyncClient(timeout=10.0)
        self.running = False
        self._task = None

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run_loop())
        logger.info("OutboxProcessor started.")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.client.aclose()
        logger.info("OutboxProcessor stopped.")

    async def run_loop(self):
        while self.running:
            try:
                published = await self.process_batch()
                if published == 0:
                    await asyncio.sleep(self.interval)
            except Exception as e:
                logger.error(f"Error in OutboxProcessor: {e}", exc_info=True)
                await asyncio.sleep(self.interval)

    async def process_batch(self, batch_size: int = 50) -> int:
        """Publishes pending events oldest first. Returns how many were published."""
        async with self.session_factory() as session:
            async with session.begin():
                stmt = (
                    select(OutboxEvent)
                    .where(OutboxEvent.status == OutboxStatus.PENDING)
                    .order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
                    .with_for_update(skip_locked=True)
                    .limit(batch_size)
                )
                events = (await session.execute(stmt)).scalars().all()

                published = 0
                for event in events:
                    event.attempts += 1
                    try:
                        await self._publish(event)
                    except httpx.HTTPError as e:
                        # Left pending; retried on the next batch
                        event.last_error = str(e) or type(e).__name__
                        logger.warning(f"Failed to publish outbox event {event.id} ({event.dedupe_key}): {event.last_error}")
                        continue
                    event.status = OutboxStatus.PUBLISHED
                    event.published_at = utcnow()
                    event.last_error = None
                    published += 1

                return published

    async def _publish(self, event: OutboxEvent):
        """
        Sends the event to the billing webhook. Consumers dedupe on the
        Idempotency-Key header, since a crash after the POST but before the
        commit republishes the event.
        """
        if not self.settings.BILLING_WEBHOOK_URL:
            logger.info(f"OUTBOX PUBLISH: ID={event.id}, Type={event.event_type}, Payload={event.payload}")
            return

        resp = await self.client.post(
            self.settings.BILLING_WEBHOOK_URL,
            json={"type": event.event_type, "data": event.payload},
            headers={"Idempotency-Key": event.dedupe_key},
        )
        resp.raise_for_status()
