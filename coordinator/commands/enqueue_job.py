import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.api.v1.metrics import SINGLETON_COLLAPSES_TOTAL
from coordinator.db.compat import upsert_insert
from coordinator.db.models import Job, JobEventLog
from coordinator.domain.errors import TransientError
from coordinator.domain.models import EnqueueOptions
from coordinator.domain.states import JobState, JobEvent, NON_TERMINAL_STATES, SINGLETON_ACTIVE_PREDICATE
from coordinator.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Conflict, then the live job finished before we could read its id. Each round
# means another job finished in between, so a handful is plenty.
MAX_SINGLETON_ATTEMPTS = 5


async def enqueue_job(
    session: AsyncSession,
    queue_name: str,
    payload: dict[str, Any],
    options: Optional[EnqueueOptions] = None,
    *,
    now: Optional[datetime] = None,
) -> UUID:
    """
    Persists a job and returns its id.

    With a singleton key, all concurrent callers converge on one live job:
    the insert targets the partial unique index on singleton_key (live states
    only) and does nothing on conflict, in which case the existing live job's
    id is returned instead. The caller owns the transaction.
    """
    options = options or EnqueueOptions()
    now = now or utcnow()

    run_after = options.run_after or now
    expire_at = now + timedelta(seconds=options.expire_in_seconds)

    for _ in range(MAX_SINGLETON_ATTEMPTS):
        # 1. Try to create
        stmt = upsert_insert(session, Job).values(
            queue_name=queue_name,
            payload=payload,
            state=JobState.CREATED,
            singleton_key=options.singleton_key,
            retry_count=0,
            retry_limit=options.retry_limit,
            retry_delay=options.retry_delay_base,
            priority=options.priority,
            run_after=run_after,
            expire_at=expire_at,
            created_at=now,
            updated_at=now,
        )
        if options.singleton_key is not None:
            stmt = stmt.on_conflict_do_nothing(
                index_elements=["singleton_key"],
                index_where=text(SINGLETON_ACTIVE_PREDICATE),
            )
        res = await session.execute(stmt.returning(Job.id))
        job_id = res.scalar_one_or_none()

        if job_id is not None:
            session.add(JobEventLog(
                job_id=job_id,
                event_type=JobEvent.CREATED,
                timestamp=now,
                meta={"queue": queue_name, "singleton_key": options.singleton_key},
            ))
            await session.flush()
            return job_id

        # 2. Someone holds the key, join their job
        existing = await session.scalar(
            select(Job.id).where(
                Job.singleton_key == options.singleton_key,
                Job.state.in_(NON_TERMINAL_STATES),
            )
        )
        if existing is not None:
            SINGLETON_COLLAPSES_TOTAL.labels(queue=queue_name).inc()
            logger.info(
                f"Job for singleton key {options.singleton_key} already live ({existing}) "
                f"outcome=singleton_collapsed"
            )
            return existing

    raise TransientError(f"Could not enqueue singleton job {options.singleton_key} after {MAX_SINGLETON_ATTEMPTS} attempts")
