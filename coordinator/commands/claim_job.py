import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from coordinator.api.v1.metrics import JOB_START_DELAY
from coordinator.db.models import Job, JobEventLog
from coordinator.domain.states import JobState, JobEvent, RUNNABLE_STATES
from coordinator.utils.clock import utcnow, as_utc

logger = logging.getLogger(__name__)


async def claim_next_job(
    session: AsyncSession,
    queue_name: str,
    *,
    now: Optional[datetime] = None,
) -> Optional[Job]:
    """
    Atomically moves the best due job of a queue to ACTIVE.

    Best = highest priority, then earliest run_after, then oldest. Rows
    locked by a concurrent claimer are skipped rather than waited on, and the
    state guard on the UPDATE hands a job to one claimer only.
    """
    now = now or utcnow()

    # 1. Candidate: best due job nobody else is holding
    candidate = aliased(Job)
    candidate_q = (
        select(candidate.id)
        .where(
            candidate.queue_name == queue_name,
            candidate.state.in_(RUNNABLE_STATES),
            candidate.run_after <= now,
            candidate.expire_at > now,
        )
        .order_by(candidate.priority.desc(), candidate.run_after.asc(), candidate.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )

    # 2. Guarded transition, one statement
    stmt = (
        update(Job)
        .where(Job.id == candidate_q, Job.state.in_(RUNNABLE_STATES))
        .values(state=JobState.ACTIVE, started_at=now, updated_at=now)
        .returning(Job)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    res = await session.execute(stmt)
    job = res.scalar_one_or_none()
    if job is None:
        return None

    delay = (now - as_utc(job.run_after)).total_seconds()
    if delay >= 0:
        JOB_START_DELAY.observe(delay)

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.ACTIVATED,
        timestamp=now,
        meta={"retry_count": job.retry_count},
    ))
    await session.flush()
    return job
