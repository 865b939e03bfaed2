from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.api.v1.metrics import JOB_DURATION, JOB_COMPLETE_TOTAL
from coordinator.db.models import Job, JobEventLog
from coordinator.domain.errors import JobNotFoundError, InvalidJobStateError
from coordinator.domain.states import JobState, JobEvent
from coordinator.utils.clock import utcnow, as_utc

async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    result_data: Optional[dict[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> Job:
    """
    Marks an ACTIVE job as COMPLETED and saves its result.
    Completing an already completed job is a no-op.
    """
    now = now or utcnow()

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.state == JobState.ACTIVE)
        .values(state=JobState.COMPLETED, result=result_data, completed_at=now, updated_at=now, last_error=None)
        .returning(Job)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    res = await session.execute(stmt)
    job = res.scalar_one_or_none()

    if job is None:
        current = await session.get(Job, job_id, populate_existing=True)
        if current is None:
            raise JobNotFoundError(job_id)
        if current.state == JobState.COMPLETED:
            return current
        raise InvalidJobStateError(current.state, JobState.COMPLETED)

    if job.started_at:
        duration = (now - as_utc(job.started_at)).total_seconds()
        if duration >= 0:
            JOB_DURATION.observe(duration)

    JOB_COMPLETE_TOTAL.labels(queue=job.queue_name).inc()

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.COMPLETED,
        timestamp=now,
        meta={"retry_count": job.retry_count},
    ))

    await session.flush()
    return job
