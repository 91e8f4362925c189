"""
Stuck-job recovery.

The orchestrator cannot tell a crashed worker from a slow one. The only
levers are the staleness threshold, which grows with the batch size, and the
retry budget. A stalled job is re-signaled up to MAX_RETRIES times, then
failed with "exceeded retry budget". To the polling owner it looks like a
slow job until one of those two things happens.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from bulk_orchestrator.db import queries
from bulk_orchestrator.db.models import Job
from bulk_orchestrator.commands.recover_stale import recover_stale_job, RecoveryOutcome
from bulk_orchestrator.domain.errors import InvalidTransition
from bulk_orchestrator.domain.models import SweepResult
from bulk_orchestrator.domain.retry import staleness_threshold
from bulk_orchestrator.services.queue_manager import QueueManager
from bulk_orchestrator.settings import Settings
from bulk_orchestrator.utils.clock import utcnow, ensure_aware

logger = logging.getLogger(__name__)

class StuckJobRecovery:
    def __init__(
        self,
        queue_manager: QueueManager,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
    ):
        self.queue_manager = queue_manager
        self.session_factory = session_factory or queue_manager.session_factory
        self.settings = settings or queue_manager.settings

    def threshold_for(self, total_requests: int) -> timedelta:
        return timedelta(seconds=staleness_threshold(
            total_requests,
            self.settings.STALENESS_BASE_SECONDS,
            self.settings.STALENESS_PER_RECORD_SECONDS,
            self.settings.STALENESS_MAX_SECONDS,
        ))

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        One pass over stalled processing jobs. Safe to run concurrently with
        worker reports and with other sweeps: every write is conditioned on
        the row version read here.

        Acts on at most RECOVERY_BATCH_SIZE stalled jobs. Candidates that are
        past the smallest threshold but not their own are paged over, so big
        quiet jobs cannot hide a stalled small one behind them.
        """
        now = now or utcnow()
        result = SweepResult()

        # Smallest threshold any job can have; the per-job one is applied below
        min_threshold = timedelta(seconds=min(self.settings.STALENESS_BASE_SECONDS, self.settings.STALENESS_MAX_SECONDS))

        batch_size = max(self.settings.RECOVERY_BATCH_SIZE, 1)
        handled = 0
        after = None
        while handled < batch_size:
            async with self.session_factory() as session:
                candidates = await queries.find_stale_candidates(session, now - min_threshold, batch_size, after=after)

            for candidate in candidates:
                after = (candidate.updated_at, candidate.id)
                result.scanned += 1
                if now - ensure_aware(candidate.updated_at) <= self.threshold_for(candidate.total_requests):
                    continue

                await self._recover(candidate, now, result)
                handled += 1
                if handled >= batch_size:
                    break

            if len(candidates) < batch_size:
                break

        if result.redispatched or result.failed:
            logger.info(
                f"Recovery sweep: scanned={result.scanned} redispatched={result.redispatched} "
                f"failed={result.failed} skipped={result.skipped} signal_failures={result.signal_failures}"
            )
        return result

    async def _recover(self, candidate: Job, now: datetime, result: SweepResult) -> None:
        try:
            outcome, job = await self.queue_manager.run_in_transaction(
                lambda session: recover_stale_job(session, candidate, now, self.settings.MAX_RETRIES)
            )
        except InvalidTransition as exc:
            await self.queue_manager.record_rejection(exc)
            result.skipped += 1
            return

        if outcome == RecoveryOutcome.SKIPPED:
            result.skipped += 1
        elif outcome == RecoveryOutcome.FAILED:
            result.failed += 1
        else:
            result.redispatched += 1
            # Signal after commit, with the bumped retry_count as the attempt number
            if not await self.queue_manager.signal_worker(job):
                result.signal_failures += 1
