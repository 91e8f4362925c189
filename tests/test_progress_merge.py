from types import SimpleNamespace
from uuid import uuid4

from bulk_orchestrator.domain.models import ProgressReport, RecordResult
from bulk_orchestrator.domain.progress import merge_progress


def make_job(total=10, processed=0, successful=0, failed=0, current_index=0, records=None):
    return SimpleNamespace(
        id=uuid4(),
        total_requests=total,
        processed_requests=processed,
        successful_count=successful,
        failed_count=failed,
        current_index=current_index,
        requests_data=records if records is not None else [{"email": f"p{i}@x.com", "status": "pending"} for i in range(total)],
    )


class TestMergeProgress:
    """Worker reports merge without ever moving counters backwards"""

    def test_cumulative_counters_take_max(self):
        job = make_job(processed=6, successful=5, failed=1, current_index=6)
        merged = merge_progress(job, ProgressReport(processed=4, successful=4, failed=0, current_index=4))
        assert merged.processed_requests == 6
        assert merged.successful_count == 5
        assert merged.failed_count == 1
        assert merged.current_index == 6

    def test_deltas_add(self):
        job = make_job(processed=2, successful=2)
        merged = merge_progress(job, ProgressReport(processed_delta=3, successful_delta=2, failed_delta=1))
        assert merged.processed_requests == 5
        assert merged.successful_count == 4
        assert merged.failed_count == 1

    def test_duplicate_cumulative_report_is_idempotent(self):
        job = make_job()
        report = ProgressReport(processed=3, successful=2, failed=1, current_index=3)
        first = merge_progress(job, report)
        job.processed_requests = first.processed_requests
        job.successful_count = first.successful_count
        job.failed_count = first.failed_count
        job.current_index = first.current_index
        second = merge_progress(job, report)
        assert second.as_values() == first.as_values()

    def test_clamped_to_total(self):
        job = make_job(total=10)
        merged = merge_progress(job, ProgressReport(processed=25, successful=20, failed=5, current_index=40))
        assert merged.processed_requests == 10
        assert merged.successful_count + merged.failed_count <= merged.processed_requests
        assert merged.current_index == 10

    def test_outcomes_imply_processed(self):
        merged = merge_progress(make_job(), ProgressReport(successful=3, failed=1))
        assert merged.processed_requests == 4

    def test_inconsistent_report_keeps_recorded_failures(self):
        job = make_job(total=10, processed=10, successful=2, failed=8)
        merged = merge_progress(job, ProgressReport(successful=9))
        assert merged.failed_count == 8
        assert merged.successful_count == 2
        assert merged.successful_count + merged.failed_count <= merged.processed_requests

    def test_results_merge_by_index(self):
        job = make_job(total=3)
        merged = merge_progress(job, ProgressReport(results=[
            RecordResult(index=1, data={"status": "success", "result": "valid"}),
            RecordResult(index=7, data={"status": "success"}),
        ]))
        assert merged.requests_data[1] == {"email": "p1@x.com", "status": "success", "result": "valid"}
        assert merged.requests_data[0]["status"] == "pending"
        assert len(merged.requests_data) == 3
        # The stored list is not mutated in place
        assert job.requests_data[1]["status"] == "pending"

    def test_no_results_leaves_records_out_of_the_write(self):
        merged = merge_progress(make_job(), ProgressReport(processed=1))
        assert "requests_data" not in merged.as_values()
