from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.db.models import Job
from coordinator.domain.states import JobState


async def queue_stats(session: AsyncSession, queue_name: Optional[str] = None) -> dict:
    """
    Job counts per queue per state, every state present (zero when empty),
    plus dead-letter totals (failed + cancelled) per queue.

        {"queues": {"webhook-processing": {"created": 1, ..., "dead_letter": 0}},
         "totals": {"created": 1, ..., "dead_letter": 0}}
    """
    stmt = select(Job.queue_name, Job.state, func.count()).group_by(Job.queue_name, Job.state)
    if queue_name is not None:
        stmt = stmt.where(Job.queue_name == queue_name)
    res = await session.execute(stmt)

    queues: dict[str, dict[str, int]] = {}
    if queue_name is not None:
        queues[queue_name] = _empty_counts()

    for name, state, count in res.all():
        counts = queues.setdefault(name, _empty_counts())
        counts[str(state)] = count

    totals = _empty_counts()
    for counts in queues.values():
        counts["dead_letter"] = counts[JobState.FAILED] + counts[JobState.CANCELLED]
        for key, value in counts.items():
            totals[key] += value

    return {"queues": queues, "totals": totals}


def _empty_counts() -> dict[str, int]:
    counts = {str(state): 0 for state in JobState}
    counts["dead_letter"] = 0
    return counts
