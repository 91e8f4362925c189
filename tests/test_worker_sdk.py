import hashlib
import hmac
import json

import httpx
import pytest

from bulk_orchestrator.main import app
from bulk_orchestrator.domain.states import JobStatus
from worker_sdk import JobRunner, WorkerClient

from tests.helpers import verify_records


@pytest.fixture
def asgi_client(manager, reporter, recovery, test_settings):
    app.state.settings = test_settings
    app.state.queue_manager = manager
    app.state.status_reporter = reporter
    app.state.recovery = recovery
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestWorkerClient:
    """Signed calls from a lookup worker"""

    async def test_requests_are_signed(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"status": "processing", "stop_requested": False})

        client = WorkerClient(
            "http://orchestrator.test",
            "worker-1",
            secret="worker-secret",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://orchestrator.test"),
        )
        state = await client.report_progress("job-1", processed=3, successful=2, failed=1)

        assert state == {"status": "processing", "stop_requested": False}
        request = seen[0]
        assert request.url.path == "/api/v1/workers/job-1/progress"
        assert json.loads(request.content) == {"processed": 3, "successful": 2, "failed": 1}
        expected = hmac.new(b"worker-secret", request.content, hashlib.sha256).hexdigest()
        assert request.headers["X-Worker-Signature"] == expected
        assert request.headers["X-Worker-ID"] == "worker-1"

    async def test_failures_return_none(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        client = WorkerClient(
            "http://orchestrator.test",
            "worker-1",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://orchestrator.test"),
        )
        assert await client.heartbeat("job-1") is None
        assert await client.fetch_job("job-1") is None


class TestJobRunner:
    """A worker processing a real job through the orchestrator API"""

    async def test_runs_job_to_completion(self, manager, reporter, asgi_client):
        job_id = await manager.submit_and_dispatch("alice", "verify", verify_records(7))

        async def lookup(record):
            if record["email"].startswith("person3"):
                raise RuntimeError("mailbox unreachable")
            return {"result": "valid"}

        client = WorkerClient("http://test", "worker-1", secret="worker-secret", client=asgi_client)
        runner = JobRunner(client, lookup, report_every=3, heartbeat_interval=60)

        assert await runner.process_job(job_id) == JobStatus.COMPLETED

        snapshot = await reporter.get_job(job_id, "alice")
        assert snapshot.status == JobStatus.COMPLETED
        assert snapshot.processed_requests == 7
        assert snapshot.successful_count == 6
        assert snapshot.failed_count == 1
        assert snapshot.current_index == 7
        assert snapshot.requests_data[0]["result"] == "valid"
        assert snapshot.requests_data[3]["status"] == "failed"
        assert "mailbox unreachable" in snapshot.requests_data[3]["error"]
        await client.close()

    async def test_stops_when_owner_stops(self, manager, reporter, asgi_client):
        job_id = await manager.submit_and_dispatch("alice", "verify", verify_records(9))
        processed = []

        async def lookup(record):
            processed.append(record["email"])
            if len(processed) == 2:
                await manager.stop(job_id, "alice")
            return {"result": "valid"}

        client = WorkerClient("http://test", "worker-1", secret="worker-secret", client=asgi_client)
        runner = JobRunner(client, lookup, report_every=3, heartbeat_interval=60)

        assert await runner.process_job(job_id) == JobStatus.FAILED
        assert len(processed) == 3

        snapshot = await reporter.get_job(job_id, "alice")
        assert snapshot.status == JobStatus.FAILED
        assert snapshot.error_message == "stopped by user"
        assert snapshot.processed_requests == 3
        await client.close()

    async def test_resumes_from_cursor(self, manager, asgi_client):
        from bulk_orchestrator.domain.models import ProgressReport

        job_id = await manager.submit_and_dispatch("alice", "verify", verify_records(5))
        await manager.apply_progress(job_id, ProgressReport(processed=3, successful=3, current_index=3))
        seen = []

        async def lookup(record):
            seen.append(record["email"])
            return {}

        client = WorkerClient("http://test", "worker-1", secret="worker-secret", client=asgi_client)
        await JobRunner(client, lookup, heartbeat_interval=60).process_job(job_id)
        assert seen == ["person3@example.com", "person4@example.com"]
        await client.close()
