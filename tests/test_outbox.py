import json

import httpx

from bulk_orchestrator.domain.models import ProgressReport
from bulk_orchestrator.domain.states import JobStatus, OutboxStatus
from bulk_orchestrator.services.outbox import OutboxProcessor

from tests.helpers import verify_records


async def complete_job(manager, n=3):
    job_id = await manager.submit_and_dispatch("alice", "verify", verify_records(n))
    await manager.apply_progress(job_id, ProgressReport(processed=n, successful=n, status=JobStatus.COMPLETED))
    return job_id


class TestOutboxProcessor:
    """Publishing terminal events to billing"""

    async def test_publishes_with_idempotency_key(self, manager, session_factory, test_settings, db):
        job_id = await complete_job(manager)
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        settings = test_settings.model_copy(update={"BILLING_WEBHOOK_URL": "http://billing.test/events"})
        processor = OutboxProcessor(session_factory, settings, httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        assert await processor.process_batch() == 1
        assert await processor.process_batch() == 0

        assert len(seen) == 1
        assert seen[0].headers["Idempotency-Key"] == f"{job_id}:1"
        body = json.loads(seen[0].content)
        assert body["type"] == "job.terminal"
        assert body["data"]["successful_delta"] == 3

        event = (await db.outbox())[0]
        assert event.status == OutboxStatus.PUBLISHED
        assert event.published_at is not None

    async def test_failed_publish_stays_pending(self, manager, session_factory, test_settings, db):
        await complete_job(manager)

        def handler(request):
            return httpx.Response(500)

        settings = test_settings.model_copy(update={"BILLING_WEBHOOK_URL": "http://billing.test/events"})
        processor = OutboxProcessor(session_factory, settings, httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        assert await processor.process_batch() == 0
        event = (await db.outbox())[0]
        assert event.status == OutboxStatus.PENDING
        assert event.attempts == 1
        assert event.last_error

    async def test_without_webhook_events_are_logged_and_marked(self, manager, session_factory, test_settings, db):
        await complete_job(manager)
        processor = OutboxProcessor(session_factory, test_settings, httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))))

        assert await processor.process_batch() == 1
        assert (await db.outbox())[0].status == OutboxStatus.PUBLISHED
