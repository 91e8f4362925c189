from prometheus_client import Counter, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOBS_SUBMITTED = Counter('bulk_jobs_submitted_total', 'Jobs created by submit', ['kind'])
JOB_DISPATCH_COUNT = Counter(
    "bulk_job_dispatch_total",
    "Dispatch calls by outcome",
    ["kind", "result"] # dispatched | noop
)
WORKER_SIGNAL_FAILURES = Counter('bulk_worker_signal_failures_total', 'Worker signals that exhausted their attempts', ['kind'])
JOB_TERMINAL_TOTAL = Counter('bulk_job_terminal_total', 'Jobs reaching a terminal state', ['kind', 'status'])
PROGRESS_REPORTS = Counter(
    "bulk_job_progress_reports_total",
    "Worker progress reports merged",
    ["accepted"] # live | after_terminal
)

RECOVERY_REDISPATCHED = Counter(
    "bulk_recovery_redispatched_total",
    "Stalled jobs re-signaled by the recovery sweep"
)
RECOVERY_FAILED = Counter(
    "bulk_recovery_failed_total",
    "Stalled jobs failed after exhausting their retry budget"
)
CONCURRENCY_CONFLICTS = Counter(
    "bulk_job_concurrency_conflicts_total",
    "Optimistic writes that lost the race and were retried"
)

QUEUE_JOBS = Gauge('bulk_queue_jobs', 'Jobs per status', ['status'])
OLDEST_PROCESSING_AGE = Gauge(
    "bulk_queue_oldest_processing_age_seconds",
    "Seconds since the stalest processing job was last updated"
)

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
