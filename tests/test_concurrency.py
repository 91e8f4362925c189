import pytest

import bulk_orchestrator.db.store as store
from bulk_orchestrator.domain.errors import ConcurrencyConflict
from bulk_orchestrator.domain.models import ProgressReport
from bulk_orchestrator.domain.states import JobStatus

from tests.helpers import verify_records


class TestOptimisticWrites:
    """Version-conditioned writes re-read and re-plan when they lose a race"""

    async def test_lost_race_is_retried_and_merged(self, manager, db, monkeypatch):
        job_id = await manager.submit_and_dispatch("alice", "verify", verify_records(10))
        original_write = store.write_job
        calls = {"n": 0}

        async def racing_write(session, job, values):
            calls["n"] += 1
            if calls["n"] == 1:
                # Another orchestrator instance lands its report first
                monkeypatch.setattr(store, "write_job", original_write)
                await manager.apply_progress(job_id, ProgressReport(processed=4, successful=3, failed=1, current_index=4))
                monkeypatch.setattr(store, "write_job", racing_write)
            return await original_write(session, job, values)

        monkeypatch.setattr(store, "write_job", racing_write)
        await manager.apply_progress(job_id, ProgressReport(processed_delta=2, successful_delta=2, current_index=6))

        job = await db.job(job_id)
        assert calls["n"] == 2
        # Both reports are reflected: 4 from the competitor plus 2 delta
        assert job.processed_requests == 6
        assert job.successful_count == 5
        assert job.failed_count == 1
        assert job.current_index == 6
        assert job.status == JobStatus.PROCESSING

    async def test_conflict_after_bounded_attempts(self, manager, db, monkeypatch):
        job_id = await manager.submit_and_dispatch("alice", "verify", verify_records(1))

        async def always_lose(session, job, values):
            return False

        monkeypatch.setattr(store, "write_job", always_lose)
        with pytest.raises(ConcurrencyConflict) as exc_info:
            await manager.heartbeat(job_id)
        assert exc_info.value.attempts == manager.settings.CONCURRENCY_RETRY_ATTEMPTS
