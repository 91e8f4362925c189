import asyncio
import logging
from typing import Any, Optional

import httpx

from bulk_orchestrator.domain.errors import WorkerUnreachable
from bulk_orchestrator.domain.retry import backoff_delay
from bulk_orchestrator.domain.states import JobKind
from bulk_orchestrator.settings import settings as default_settings, Settings

logger = logging.getLogger(__name__)

class WorkerSignaler:
    """
    Fire-and-forget notification to the worker that a job is ready.

    Delivery is at-least-once: a signal is retried on network errors and 5xx,
    and recovery may send it again later. The Idempotency-Key header lets the
    worker drop duplicates for the same run and attempt.
    """

    def __init__(self, settings: Settings = default_settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.client = client or httpx.AsyncClient(timeout=settings.WORKER_SIGNAL_TIMEOUT_SECONDS)

    def endpoint_for(self, kind: str) -> str:
        if JobKind(kind) == JobKind.FIND:
            return self.settings.FIND_WORKER_URL
        return self.settings.VERIFY_WORKER_URL

    @staticmethod
    def build_payload(job) -> dict[str, Any]:
        return {
            "job_id": str(job.id),
            "kind": str(job.kind),
            "owner": job.owner,
            "total_requests": job.total_requests,
            "start_index": job.current_index,
            "attempt": job.retry_count,
            "run": job.run,
        }

    async def signal(self, job) -> None:
        """Raises WorkerUnreachable once every attempt has failed."""
        url = self.endpoint_for(job.kind)
        payload = self.build_payload(job)
        headers = {"Idempotency-Key": f"{job.id}:{job.run}:{job.retry_count}"}
        attempts = max(self.settings.WORKER_SIGNAL_ATTEMPTS, 1)

        last_error = ""
        for attempt in range(attempts):
            try:
                resp = await self.client.post(url, json=payload, headers=headers)
                if resp.status_code < 500:
                    # 4xx will not get better by retrying
                    resp.raise_for_status()
                    logger.debug(f"Signaled worker for job {job.id} at {url}")
                    return
                last_error = f"HTTP {resp.status_code}"
            except httpx.HTTPStatusError as e:
                raise WorkerUnreachable(job.id, url, f"HTTP {e.response.status_code}")
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__

            logger.warning(f"Signal for job {job.id} failed (attempt {attempt + 1}/{attempts}): {last_error}")
            if attempt + 1 < attempts:
                await asyncio.sleep(backoff_delay(attempt, base_delay_seconds=self.settings.WORKER_SIGNAL_BACKOFF_SECONDS))

        raise WorkerUnreachable(job.id, url, last_error)

    async def aclose(self):
        await self.client.aclose()
