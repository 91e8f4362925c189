from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from bulk_orchestrator.domain.errors import JobNotFoundError
from bulk_orchestrator.domain.models import ProgressReport
from bulk_orchestrator.domain.states import JobStatus
from bulk_orchestrator.services.status_reporter import StatusReporter

from tests.helpers import find_records, verify_records


class TestStatusReporter:
    """Read path used by polling clients"""

    async def test_get_job_reflects_latest_report(self, manager, reporter):
        job_id = await manager.submit_and_dispatch("alice", "find", find_records(8))
        await manager.apply_progress(job_id, ProgressReport(processed=2, successful=1, failed=1, current_index=2))

        snapshot = await reporter.get_job(job_id, "alice")
        assert snapshot.status == JobStatus.PROCESSING
        assert snapshot.processed_requests == 2
        assert snapshot.progress == 25.0
        assert len(snapshot.requests_data) == 8
        assert snapshot.updated_at.tzinfo is not None

    async def test_get_job_hides_other_owners(self, manager, reporter):
        job_id = await manager.submit("alice", "find", find_records(1))
        with pytest.raises(JobNotFoundError):
            await reporter.get_job(job_id, "bob")
        with pytest.raises(JobNotFoundError):
            await reporter.get_job(uuid4(), "alice")

    async def test_list_jobs_newest_first(self, manager, reporter):
        first = await manager.submit("alice", "find", find_records(1))
        second = await manager.submit("alice", "verify", verify_records(1))
        await manager.submit("bob", "verify", verify_records(1))

        jobs = await reporter.list_jobs("alice")
        assert [j.id for j in jobs] == [second, first]
        assert all(j.requests_data is None for j in jobs)

        with_records = await reporter.list_jobs("alice", include_records=True)
        assert with_records[0].requests_data is not None

    async def test_list_jobs_filters_and_pages(self, manager, reporter):
        pending = await manager.submit("alice", "find", find_records(1))
        running = await manager.submit_and_dispatch("alice", "find", find_records(1))

        assert [j.id for j in await reporter.list_jobs("alice", status=JobStatus.PROCESSING)] == [running]
        assert [j.id for j in await reporter.list_jobs("alice", status=JobStatus.PENDING)] == [pending]
        assert [j.id for j in await reporter.list_jobs("alice", limit=1, offset=1)] == [pending]
        assert await reporter.list_jobs("nobody") == []

    async def test_unreachable_store_degrades_to_empty(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/missing/dir/jobs.db")
        reporter = StatusReporter(async_sessionmaker(bind=engine))
        try:
            assert await reporter.list_jobs("alice") == []
            status = await reporter.queue_status("alice")
            assert status.total == 0
            assert status.counts["pending"] == 0
        finally:
            await engine.dispose()

    async def test_refused_postgres_connection_degrades_to_empty(self):
        engine = create_async_engine("postgresql+asyncpg://u:p@127.0.0.1:1/x")
        reporter = StatusReporter(async_sessionmaker(bind=engine))
        try:
            assert await reporter.list_jobs("alice") == []
            assert (await reporter.queue_status()).total == 0
        finally:
            await engine.dispose()
