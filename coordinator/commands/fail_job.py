from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.api.v1.metrics import JOB_FAILURES_TOTAL
from coordinator.db.models import Job, JobEventLog
from coordinator.domain.errors import JobNotFoundError, InvalidJobStateError
from coordinator.domain.retry import calculate_next_run
from coordinator.domain.states import JobState, JobEvent
from coordinator.utils.clock import utcnow, as_utc

async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    error: str,
    *,
    permanent: bool = False,
    now: Optional[datetime] = None,
    max_delay_seconds: int = 3600,
    jitter: bool = False,
) -> Job:
    """
    Records a failed execution of an ACTIVE job.

    - permanent: straight to FAILED, retry_count untouched.
    - past expire_at: CANCELLED, whatever retries remain.
    - retry_count (after increment) < retry_limit: RETRY with backoff.
    - otherwise: FAILED (dead letter).
    """
    now = now or utcnow()

    # Touch first: row lock plus the ACTIVE guard in one write
    touch = (
        update(Job)
        .where(Job.id == job_id, Job.state == JobState.ACTIVE)
        .values(updated_at=now)
        .returning(Job)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    res = await session.execute(touch)
    job = res.scalar_one_or_none()

    if job is None:
        current = await session.get(Job, job_id, populate_existing=True)
        if current is None:
            raise JobNotFoundError(job_id)
        raise InvalidJobStateError(current.state, JobState.FAILED)

    values: dict = {"last_error": error, "updated_at": now}
    meta: dict = {"error": error}

    if permanent:
        values.update(state=JobState.FAILED, completed_at=now)
        event = JobEvent.FAILED
        failure_type = "permanent"
    else:
        retry_count = job.retry_count + 1
        values["retry_count"] = retry_count
        meta.update(retry_count=retry_count, retry_limit=job.retry_limit)

        if now >= as_utc(job.expire_at):
            values.update(state=JobState.CANCELLED, completed_at=now)
            event = JobEvent.EXPIRED
            failure_type = "expired"
        elif retry_count < job.retry_limit:
            next_run = calculate_next_run(
                now,
                retry_count,
                job.retry_delay,
                max_delay_seconds=max_delay_seconds,
                jitter=jitter,
            )
            values.update(state=JobState.RETRY, run_after=next_run)
            meta["run_after"] = next_run.isoformat()
            event = JobEvent.RETRIED
            failure_type = "retryable"
        else:
            values.update(state=JobState.FAILED, completed_at=now)
            event = JobEvent.FAILED
            failure_type = "exhausted"

    stmt = (
        update(Job)
        .where(Job.id == job_id)
        .values(**values)
        .returning(Job)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    res = await session.execute(stmt)
    job = res.scalar_one()

    JOB_FAILURES_TOTAL.labels(queue=job.queue_name, type=failure_type).inc()

    session.add(JobEventLog(
        job_id=job.id,
        event_type=event,
        timestamp=now,
        meta=meta,
    ))

    await session.flush()
    return job
