class JobError(Exception):
    """Base exception for bulk job orchestrator errors."""
    pass

class ValidationError(JobError):
    """Rejected submission input. Nothing was written."""
    pass

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")

class InvalidTransition(JobError):
    def __init__(self, job_id, current, requested, actor, reason: str = ""):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        self.actor = actor
        message = f"Job {job_id}: {actor} cannot transition {current} -> {requested}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)

class ConcurrencyConflict(JobError):
    def __init__(self, job_id, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(f"Job {job_id} changed concurrently; gave up after {attempts} attempts")

class WorkerUnreachable(JobError):
    def __init__(self, job_id, url: str, cause: str):
        self.job_id = job_id
        self.url = url
        super().__init__(f"Worker at {url} unreachable for job {job_id}: {cause}")

class RetryBudgetExceeded(JobError):
    def __init__(self, job_id, retry_count: int, max_retries: int):
        self.job_id = job_id
        self.retry_count = retry_count
        self.max_retries = max_retries
        super().__init__(f"Job {job_id} exhausted its retry budget ({retry_count}/{max_retries})")
