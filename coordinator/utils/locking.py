import hashlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from coordinator.api.v1.metrics import LOCK_ACQUISITIONS_TOTAL

logger = logging.getLogger(__name__)

# Leader lock for the maintenance loop
MAINTENANCE_LEADER_RESOURCE = "coordinator-maintenance-leader"


def lock_key_for(resource_name: str) -> int:
    """
    Stable 64-bit advisory lock key for a resource name.

    First 8 bytes of SHA-256, read as a *signed* big-endian integer so every
    key fits Postgres' bigint.
    """
    digest = hashlib.sha256(resource_name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def tenant_reminder_resource(tenant_id: str) -> str:
    return f"{tenant_id}reminders"


class AdvisoryLock:
    """
    Non-blocking Postgres session-level advisory locks.

    A session-level lock belongs to the connection that took it, so a held
    lock keeps its connection checked out of the pool until release, and the
    unlock runs on that same connection. If the process dies the connection
    drops and Postgres frees the lock.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._held: dict[str, AsyncConnection] = {}

    async def try_acquire(self, resource_name: str, *, metric_label: str = "advisory") -> bool:
        """Returns immediately: True if we now hold the lock, False if anyone else does."""
        if resource_name in self._held:
            # Already held by this process; a second holder would not be exclusive
            LOCK_ACQUISITIONS_TOTAL.labels(resource=metric_label, result="contended").inc()
            logger.info(f"Lock {resource_name} already held in this process outcome=lock_not_acquired")
            return False

        key = lock_key_for(resource_name)
        conn = await self.engine.connect()
        try:
            res = await conn.execute(
                text("SELECT pg_try_advisory_lock(CAST(:key AS bigint))"),
                {"key": key},
            )
            acquired = res.scalar() is True
            # Session-level locks outlive the transaction; don't sit idle in one
            await conn.commit()
        except BaseException:
            await conn.close()
            raise

        if not acquired:
            await conn.close()
            LOCK_ACQUISITIONS_TOTAL.labels(resource=metric_label, result="contended").inc()
            logger.info(f"Lock {resource_name} held elsewhere outcome=lock_not_acquired")
            return False

        self._held[resource_name] = conn
        LOCK_ACQUISITIONS_TOTAL.labels(resource=metric_label, result="acquired").inc()
        return True

    async def release(self, resource_name: str) -> None:
        conn = self._held.pop(resource_name, None)
        if conn is None:
            return

        key = lock_key_for(resource_name)
        try:
            await conn.execute(
                text("SELECT pg_advisory_unlock(CAST(:key AS bigint))"),
                {"key": key},
            )
            await conn.commit()
        except BaseException:
            # Never hand a connection that may still hold the lock back to the pool
            await conn.invalidate()
            raise
        finally:
            await conn.close()

    def is_held(self, resource_name: str) -> bool:
        return resource_name in self._held

    async def release_all(self) -> None:
        for name in list(self._held):
            await self.release(name)

    @asynccontextmanager
    async def held(self, resource_name: str, *, metric_label: str = "advisory") -> AsyncIterator[bool]:
        """Yields whether the lock was acquired; releases on every exit path."""
        acquired = await self.try_acquire(resource_name, metric_label=metric_label)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(resource_name)
