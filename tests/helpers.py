from bulk_orchestrator.domain.errors import WorkerUnreachable


class FakeSignaler:
    """Records every worker signal; optionally fails them all."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.signals = []

    async def signal(self, job):
        self.signals.append({"job_id": job.id, "run": job.run, "attempt": job.retry_count, "start_index": job.current_index})
        if self.fail:
            raise WorkerUnreachable(job.id, "http://worker.test/process", "connection refused")

    async def aclose(self):
        pass


def find_records(n: int) -> list[dict]:
    return [{"full_name": f"Person {i}", "domain": f"company{i}.com"} for i in range(n)]


def verify_records(n: int) -> list[dict]:
    return [{"email": f"person{i}@example.com"} for i in range(n)]


class RefusingSessions:
    """Session factory whose first `failures` calls raise like a refused connect."""

    def __init__(self, inner=None, failures: int = 1_000_000):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionRefusedError(111, "Connect call failed ('127.0.0.1', 1)")
        return self.inner()
