import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coordinator.commands.claim_job import claim_next_job
from coordinator.commands.complete_job import complete_job
from coordinator.commands.fail_job import fail_job
from coordinator.domain.errors import PermanentError, InvalidJobStateError
from coordinator.domain.models import JobContext
from coordinator.domain.states import JobState
from coordinator.utils.clock import utcnow, as_utc

logger = logging.getLogger(__name__)

Handler = Callable[[JobContext], Awaitable[Optional[dict[str, Any]]]]


@dataclass(frozen=True)
class RunOutcome:
    job_id: UUID
    queue_name: str
    state: JobState


class QueueRuntime:
    """
    Executes registered handlers against due jobs.

    A claim is committed before the handler runs and the outcome is committed
    after it returns, so a crash in between leaves an ACTIVE job that stale
    recovery re-delivers later. Handlers must therefore be idempotent.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_retry_delay_seconds: int = 3600,
        retry_jitter: bool = False,
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.max_retry_delay_seconds = max_retry_delay_seconds
        self.retry_jitter = retry_jitter
        self.poll_interval = poll_interval
        self.clock = clock

        self._handlers: dict[str, Handler] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def work(self, queue_name: str, handler: Handler) -> None:
        self._handlers[queue_name] = handler

    @property
    def queues(self) -> list[str]:
        return list(self._handlers)

    async def run_once(self, queue_name: str) -> Optional[RunOutcome]:
        """Claims and executes one due job of `queue_name`. None when idle."""
        handler = self._handlers.get(queue_name)
        if handler is None:
            raise KeyError(f"No handler registered for queue {queue_name}")

        # 1. Claim (own transaction)
        async with self.session_factory() as session:
            async with session.begin():
                job = await claim_next_job(session, queue_name, now=self.clock())
                if job is None:
                    return None
                ctx = JobContext(
                    id=job.id,
                    queue_name=job.queue_name,
                    payload=dict(job.payload or {}),
                    state=JobState(job.state),
                    retry_count=job.retry_count,
                    retry_limit=job.retry_limit,
                    started_at=as_utc(job.started_at),
                )

        # 2. Execute
        try:
            result = await handler(ctx)
        except PermanentError as e:
            logger.warning(f"Job {ctx.id} on {queue_name} failed permanently: {e}")
            return await self._fail(ctx, str(e), permanent=True)
        except Exception as e:
            logger.error(f"Job {ctx.id} on {queue_name} failed: {e}", exc_info=True)
            return await self._fail(ctx, f"{type(e).__name__}: {e}", permanent=False)

        # 3. Complete (own transaction)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    job = await complete_job(session, ctx.id, result, now=self.clock())
        except InvalidJobStateError as e:
            return self._lost(ctx, e)
        return RunOutcome(job_id=ctx.id, queue_name=queue_name, state=JobState(job.state))

    async def _fail(self, ctx: JobContext, error: str, *, permanent: bool) -> RunOutcome:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    job = await fail_job(
                        session,
                        ctx.id,
                        error,
                        permanent=permanent,
                        now=self.clock(),
                        max_delay_seconds=self.max_retry_delay_seconds,
                        jitter=self.retry_jitter,
                    )
        except InvalidJobStateError as e:
            return self._lost(ctx, e)
        return RunOutcome(job_id=ctx.id, queue_name=ctx.queue_name, state=JobState(job.state))

    def _lost(self, ctx: JobContext, e: InvalidJobStateError) -> RunOutcome:
        # Cancelled or recovered while the handler ran; whoever moved it owns it now
        logger.info(f"Job {ctx.id} on {ctx.queue_name} left ACTIVE while running, outcome dropped: {e}")
        return RunOutcome(job_id=ctx.id, queue_name=ctx.queue_name, state=JobState(e.current_state))

    async def drain(self, max_jobs: int = 25, queues: Optional[list[str]] = None) -> dict:
        """
        Runs at most `max_jobs` jobs round-robin across queues, stopping early
        once every queue is idle. Bounded work for a triggered invocation.
        """
        names = queues or self.queues
        states: Counter = Counter()
        per_queue: Counter = Counter()
        idle: set[str] = set()
        processed = 0

        while processed < max_jobs and len(idle) < len(names):
            for name in names:
                if name in idle or processed >= max_jobs:
                    continue
                outcome = await self.run_once(name)
                if outcome is None:
                    idle.add(name)
                    continue
                processed += 1
                states[str(outcome.state)] += 1
                per_queue[name] += 1

        return {"processed": processed, "states": dict(states), "queues": dict(per_queue)}

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Queue runtime started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Queue runtime stopped.")

    async def _loop(self):
        while self._running:
            processed = 0
            try:
                summary = await self.drain()
                processed = summary["processed"]
            except Exception as e:
                logger.error(f"Error in queue runtime loop: {e}", exc_info=True)

            if not processed:
                await asyncio.sleep(self.poll_interval)
