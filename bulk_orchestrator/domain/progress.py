import logging
from dataclasses import dataclass
from typing import Any, Optional

from bulk_orchestrator.domain.models import ProgressReport

logger = logging.getLogger(__name__)

@dataclass
class MergedProgress:
    processed_requests: int
    successful_count: int
    failed_count: int
    current_index: int
    requests_data: Optional[list[dict[str, Any]]]  # None when the report carried no results

    def as_values(self) -> dict[str, Any]:
        values = {
            "processed_requests": self.processed_requests,
            "successful_count": self.successful_count,
            "failed_count": self.failed_count,
            "current_index": self.current_index,
        }
        if self.requests_data is not None:
            values["requests_data"] = self.requests_data
        return values

def merge_progress(job, report: ProgressReport) -> MergedProgress:
    """
    Merges a worker report into the job's counters.

    Reports can arrive late, twice, or out of order, so cumulative counters
    use max() and deltas add on top; nothing ever decreases. The result is
    clamped so that processed <= total and successful + failed <= processed.
    """
    total = job.total_requests

    processed = job.processed_requests
    successful = job.successful_count
    failed = job.failed_count

    if report.processed is not None:
        processed = max(processed, report.processed)
    if report.successful is not None:
        successful = max(successful, report.successful)
    if report.failed is not None:
        failed = max(failed, report.failed)

    processed += max(report.processed_delta, 0)
    successful += max(report.successful_delta, 0)
    failed += max(report.failed_delta, 0)

    # Outcomes imply processing, even if the processed counter lags behind
    processed = max(processed, successful + failed)

    # The stored row already satisfies the bounds, so its counters are floors:
    # successful may not eat into failures already recorded, and vice versa.
    processed = max(min(processed, total), job.processed_requests)
    successful = min(successful, processed - job.failed_count)
    failed = min(failed, processed - successful)

    current_index = job.current_index
    if report.current_index is not None:
        current_index = max(current_index, min(report.current_index, total))

    requests_data = None
    if report.results:
        requests_data = merge_record_results(job.id, job.requests_data, report.results)

    return MergedProgress(
        processed_requests=processed,
        successful_count=successful,
        failed_count=failed,
        current_index=current_index,
        requests_data=requests_data,
    )

def merge_record_results(job_id, records: list[dict[str, Any]], results) -> list[dict[str, Any]]:
    merged = [dict(r) for r in records]
    for result in results:
        if result.index < 0 or result.index >= len(merged):
            logger.warning("Ignoring result for record %s of job %s (has %s records)", result.index, job_id, len(merged))
            continue
        merged[result.index].update(result.data)
    return merged
