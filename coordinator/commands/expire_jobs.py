import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.api.v1.metrics import JOB_FAILURES_TOTAL
from coordinator.commands.fail_job import fail_job
from coordinator.db.models import Job, JobEventLog
from coordinator.domain.errors import JobNotFoundError, InvalidJobStateError
from coordinator.domain.states import JobState, JobEvent, RUNNABLE_STATES, NON_TERMINAL_STATES
from coordinator.utils.clock import utcnow

logger = logging.getLogger(__name__)


async def expire_jobs(session: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """
    Cancels waiting jobs whose lifetime ran out before they could run.
    Returns the number of jobs cancelled.
    """
    now = now or utcnow()

    stmt = (
        update(Job)
        .where(Job.state.in_(RUNNABLE_STATES), Job.expire_at <= now)
        .values(state=JobState.CANCELLED, completed_at=now, updated_at=now, last_error="expired")
        .returning(Job.id, Job.queue_name)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    expired = res.all()

    for job_id, queue_name in expired:
        JOB_FAILURES_TOTAL.labels(queue=queue_name, type="expired").inc()
        session.add(JobEventLog(
            job_id=job_id,
            event_type=JobEvent.EXPIRED,
            timestamp=now,
            meta={"reason": "expire_at passed before execution"},
        ))

    if expired:
        logger.info(f"Cancelled {len(expired)} expired jobs")
    await session.flush()
    return len(expired)


async def recover_stale_jobs(
    session: AsyncSession,
    *,
    active_timeout_seconds: int,
    now: Optional[datetime] = None,
    limit: int = 100,
    max_delay_seconds: int = 3600,
    jitter: bool = False,
) -> int:
    """
    Finds ACTIVE jobs whose worker vanished and runs them through the failure path.

    The job is re-delivered later (at-least-once) unless its retries or its
    lifetime are used up. Returns number of jobs recovered.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=active_timeout_seconds)

    stmt = (
        select(Job.id)
        .where(Job.state == JobState.ACTIVE, Job.started_at < cutoff)
        .order_by(Job.started_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    res = await session.execute(stmt)
    stale_ids = list(res.scalars().all())

    count = 0
    for job_id in stale_ids:
        session.add(JobEventLog(
            job_id=job_id,
            event_type=JobEvent.RECOVERED,
            timestamp=now,
            meta={"reason": "active_timeout", "timeout_seconds": active_timeout_seconds},
        ))
        try:
            await fail_job(
                session,
                job_id,
                f"Job exceeded active timeout of {active_timeout_seconds}s (worker crash?)",
                now=now,
                max_delay_seconds=max_delay_seconds,
                jitter=jitter,
            )
        except InvalidJobStateError:
            # Finished between the select and the update
            continue
        count += 1

    if count:
        logger.warning(f"Recovered {count} stale active jobs")
    await session.flush()
    return count


async def cancel_job(
    session: AsyncSession,
    job_id: UUID,
    *,
    now: Optional[datetime] = None,
) -> Job:
    """Cancels a job that has not finished. Cancelling twice is a no-op."""
    now = now or utcnow()

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.state.in_(NON_TERMINAL_STATES))
        .values(state=JobState.CANCELLED, completed_at=now, updated_at=now)
        .returning(Job)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    res = await session.execute(stmt)
    job = res.scalar_one_or_none()

    if job is None:
        current = await session.get(Job, job_id, populate_existing=True)
        if current is None:
            raise JobNotFoundError(job_id)
        if current.state == JobState.CANCELLED:
            return current
        raise InvalidJobStateError(current.state, JobState.CANCELLED)

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CANCELLED,
        timestamp=now,
        meta={"reason": "cancelled"},
    ))
    await session.flush()
    return job
