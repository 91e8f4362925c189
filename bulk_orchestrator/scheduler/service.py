import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from bulk_orchestrator.api.v1.metrics import LEADER_STATUS
from bulk_orchestrator.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from bulk_orchestrator.services.queue_manager import QueueManager
from bulk_orchestrator.services.recovery import StuckJobRecovery
from bulk_orchestrator.utils.locking import try_advisory_lock

logger = logging.getLogger(__name__)

class RecoveryScheduler:
    """
    Runs the recovery sweep on one elected instance and refreshes queue gauges
    on all of them. Leadership is a Postgres advisory lock held on a dedicated
    connection; losing the connection loses the lock.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        queue_manager: QueueManager,
        recovery: StuckJobRecovery,
        interval: Optional[float] = None,
    ):
        self.engine = engine
        self.queue_manager = queue_manager
        self.recovery = recovery
        self.interval = interval if interval is not None else queue_manager.settings.RECOVERY_INTERVAL_SECONDS
        self._running = False
        self._task = None
        self._is_leader = False
        self._lock_conn: Optional[AsyncConnection] = None

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Recovery scheduler started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._release()
        logger.info("Recovery scheduler stopped.")

    async def _release(self):
        if self._lock_conn is not None:
            await self._lock_conn.close()
            self._lock_conn = None
        self._set_leader(False)

    def _set_leader(self, is_leader: bool):
        if is_leader and not self._is_leader:
            logger.info("Acquired leadership. Running recovery sweeps.")
        elif not is_leader and self._is_leader:
            logger.info("Lost leadership. Recovery sweeps stop on this instance.")
        self._is_leader = is_leader
        LEADER_STATUS.set(1 if is_leader else 0)

    async def tick(self) -> None:
        if self._lock_conn is None:
            self._lock_conn = await self.engine.connect()

        self._set_leader(await try_advisory_lock(self._lock_conn))

        if self._is_leader:
            await run_leader_tasks(self.recovery, self.queue_manager)

        async with self.queue_manager.session_factory() as session:
            await run_metrics_tasks(session)

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in recovery scheduler tick: {e}", exc_info=True)
                # Drop the lock connection; reconnect and re-elect next tick
                await self._release()

            await asyncio.sleep(self.interval)
