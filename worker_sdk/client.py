import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)

class WorkerClient:
    """
    HTTP client a lookup worker uses to talk back to the orchestrator.

    All calls are best-effort: failures are logged and reported as None so
    the worker can carry on. A report that never lands is harmless, since
    counters are sent cumulatively and the next report supersedes it.
    """

    def __init__(
        self,
        base_url: str,
        worker_id: str,
        secret: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.worker_id = worker_id
        self.secret = secret
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=10.0)

    @staticmethod
    def _serialize_body(json_body: Dict[str, Any]) -> bytes:
        # Stable encoding keeps signatures deterministic and payloads compact.
        return json.dumps(json_body, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def _build_headers(self, body: bytes) -> Dict[str, str]:
        headers = {"X-Worker-ID": self.worker_id}
        if self.secret:
            headers["X-Worker-Signature"] = hmac.new(
                self.secret.encode("utf-8"),
                body,
                hashlib.sha256,
            ).hexdigest()
        return headers

    async def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        content = self._serialize_body(json_body) if json_body is not None else b""
        headers = self._build_headers(content)
        if json_body is not None:
            headers["Content-Type"] = "application/json"

        try:
            resp = await self.client.request(method, path, content=content or None, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            log_fn = logger.info if status_code in (401, 403, 404, 409) else logger.warning
            log_fn("%s %s rejected for worker=%s status=%s", method, path, self.worker_id, status_code)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("%s %s failed for worker=%s: %s", method, path, self.worker_id, e)
            return None

    async def fetch_job(self, job_id: UUID) -> Optional[Dict[str, Any]]:
        """The job with its records, or None if it could not be fetched."""
        return await self._request("GET", f"/api/v1/workers/{job_id}")

    async def report_progress(
        self,
        job_id: UUID,
        *,
        processed: Optional[int] = None,
        successful: Optional[int] = None,
        failed: Optional[int] = None,
        current_index: Optional[int] = None,
        results: Optional[List[Dict[str, Any]]] = None,
        status: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        body: Dict[str, Any] = {}
        for key, value in (
            ("processed", processed),
            ("successful", successful),
            ("failed", failed),
            ("current_index", current_index),
            ("status", status),
            ("error_message", error_message),
        ):
            if value is not None:
                body[key] = value
        if results:
            body["results"] = results
        return await self._request("POST", f"/api/v1/workers/{job_id}/progress", json_body=body)

    async def heartbeat(self, job_id: UUID) -> Optional[Dict[str, Any]]:
        return await self._request("POST", f"/api/v1/workers/{job_id}/heartbeat", json_body={})

    async def close(self):
        await self.client.aclose()
