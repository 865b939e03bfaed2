from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coordinator.commands.enqueue_job import enqueue_job
from coordinator.commands.expire_jobs import expire_jobs, recover_stale_jobs, cancel_job
from coordinator.commands.queue_stats import queue_stats
from coordinator.db.models import Job
from coordinator.domain.models import EnqueueOptions


class JobQueue:
    """
    Session-owning facade over the queue commands.

    Each call runs in its own transaction. Callers that need an enqueue to
    share a transaction with other writes use `enqueue_job` directly.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_retry_delay_seconds: int = 3600,
        retry_jitter: bool = False,
    ):
        self.session_factory = session_factory
        self.max_retry_delay_seconds = max_retry_delay_seconds
        self.retry_jitter = retry_jitter

    async def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        options: Optional[EnqueueOptions] = None,
        *,
        now: Optional[datetime] = None,
    ) -> UUID:
        async with self.session_factory() as session:
            async with session.begin():
                return await enqueue_job(session, queue_name, payload, options, now=now)

    async def get(self, job_id: UUID) -> Optional[Job]:
        async with self.session_factory() as session:
            return await session.get(Job, job_id)

    async def cancel(self, job_id: UUID, *, now: Optional[datetime] = None) -> Job:
        async with self.session_factory() as session:
            async with session.begin():
                return await cancel_job(session, job_id, now=now)

    async def stats(self, queue_name: Optional[str] = None) -> dict:
        async with self.session_factory() as session:
            return await queue_stats(session, queue_name)

    async def expire(self, *, now: Optional[datetime] = None) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                return await expire_jobs(session, now=now)

    async def recover_stale(self, active_timeout_seconds: int, *, now: Optional[datetime] = None) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                return await recover_stale_jobs(
                    session,
                    active_timeout_seconds=active_timeout_seconds,
                    now=now,
                    max_delay_seconds=self.max_retry_delay_seconds,
                    jitter=self.retry_jitter,
                )
