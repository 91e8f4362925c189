import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, List, Optional
from uuid import UUID

from worker_sdk.client import WorkerClient

logger = logging.getLogger(__name__)

# Looks up one record; returns the record's result fields (merged into requests_data)
Handler = Callable[[dict], Coroutine[Any, Any, dict]]

class JobRunner:
    """
    Processes one signaled job: fetches it, walks its records from the resume
    cursor, and reports cumulative progress every `report_every` records.

    Stops early when the orchestrator reports the job stopped or otherwise no
    longer processing. A handler exception marks that record failed and the
    batch carries on.
    """

    def __init__(
        self,
        client: WorkerClient,
        handler: Handler,
        report_every: int = 25,
        heartbeat_interval: float = 10.0,
    ):
        self.client = client
        self.handler = handler
        self.report_every = max(report_every, 1)
        self.heartbeat_interval = heartbeat_interval

    async def process_job(self, job_id: UUID) -> Optional[str]:
        """Returns the job's final status as last seen, or None if it could not be fetched."""
        job = await self.client.fetch_job(job_id)
        if not job:
            logger.error("Could not fetch job %s", job_id)
            return None
        if job["status"] != "processing" or job["stop_requested"]:
            logger.info("Job %s is %s; nothing to do", job_id, job["status"])
            return job["status"]

        records = job.get("requests_data") or []
        processed = job["processed_requests"]
        successful = job["successful_count"]
        failed = job["failed_count"]
        start = job["current_index"]
        logger.info("Processing job %s from record %s of %s", job_id, start, job["total_requests"])

        heartbeat_task = asyncio.create_task(self._heartbeat_loop(job_id))
        pending: List[Dict[str, Any]] = []
        try:
            for index in range(start, len(records)):
                data = await self._run_handler(records[index])
                if data.get("status") == "failed":
                    failed += 1
                else:
                    successful += 1
                processed += 1
                pending.append({"index": index, "data": data})

                if len(pending) >= self.report_every:
                    state = await self.client.report_progress(
                        job_id,
                        processed=processed,
                        successful=successful,
                        failed=failed,
                        current_index=index + 1,
                        results=pending,
                    )
                    pending = []
                    if state and (state["status"] != "processing" or state["stop_requested"]):
                        logger.info("Job %s is %s; stopping early", job_id, state["status"])
                        return state["status"]

            state = await self.client.report_progress(
                job_id,
                processed=processed,
                successful=successful,
                failed=failed,
                current_index=len(records),
                results=pending,
                status="completed",
            )
            if state is None:
                logger.error("Job %s finished but the completion report failed; recovery will re-drive it", job_id)
                return None
            logger.info("Job %s finished as %s", job_id, state["status"])
            return state["status"]
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass

    async def _run_handler(self, record: dict) -> dict:
        try:
            data = dict(await self.handler(dict(record)))
            data.setdefault("status", "success")
            return data
        except Exception as e:
            error_msg = f"{type(e).__name__}: {str(e)}"
            logger.warning("Record lookup failed: %s", error_msg)
            return {"status": "failed", "error": error_msg}

    async def _heartbeat_loop(self, job_id: UUID):
        try:
            while True:
                await asyncio.sleep(self.heartbeat_interval)
                logger.debug(f"Sending heartbeat for {job_id}")
                if await self.client.heartbeat(job_id) is None:
                    logger.warning(f"Heartbeat failed for {job_id}")
        except asyncio.CancelledError:
            pass
