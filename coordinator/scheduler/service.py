import asyncio
import logging

from coordinator.api.v1.metrics import LEADER_STATUS
from coordinator.bootstrap import Services
from coordinator.scheduler.ticker import run_maintenance, refresh_queue_metrics
from coordinator.utils.locking import MAINTENANCE_LEADER_RESOURCE

logger = logging.getLogger(__name__)


class MaintenanceService:
    """
    Background maintenance for long-lived deployments.

    Every instance runs the loop; only the one holding the leader advisory
    lock does the maintenance work. Metrics are refreshed everywhere so each
    instance's /metrics is current.
    """

    def __init__(self, services: Services, interval: int = 30):
        self.services = services
        self.interval = interval
        self._running = False
        self._task = None
        self._is_leader = False

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Maintenance service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._is_leader:
            await self.services.lock.release(MAINTENANCE_LEADER_RESOURCE)
            self._is_leader = False
            LEADER_STATUS.set(0)
        logger.info("Maintenance service stopped.")

    async def tick(self):
        lock = self.services.lock

        # The leader keeps its lock (and connection) between ticks
        if not self._is_leader:
            if await lock.try_acquire(MAINTENANCE_LEADER_RESOURCE, metric_label="maintenance_leader"):
                logger.info("Acquired leadership. Running maintenance.")
                self._is_leader = True
                LEADER_STATUS.set(1)

        if self._is_leader:
            await run_maintenance(self.services)

        await refresh_queue_metrics(self.services)

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in maintenance ticker: {e}", exc_info=True)
                # Give up leadership; the lock's connection may be the broken one
                if self._is_leader:
                    self._is_leader = False
                    LEADER_STATUS.set(0)
                    try:
                        await self.services.lock.release(MAINTENANCE_LEADER_RESOURCE)
                    except Exception as release_error:
                        logger.warning(f"Releasing leader lock failed: {release_error}")

            await asyncio.sleep(self.interval)
