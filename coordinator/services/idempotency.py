import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, exists
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.db.compat import upsert_insert
from coordinator.db.models import IngestedEvent, Job
from coordinator.domain.models import AdmitResult, EventAttrs
from coordinator.utils.clock import utcnow

logger = logging.getLogger(__name__)


async def admit(
    session: AsyncSession,
    event_id: str,
    attrs: EventAttrs,
    *,
    now: Optional[datetime] = None,
) -> AdmitResult:
    """
    Records an inbound event exactly once.

    One statement: INSERT ... ON CONFLICT (event_id) DO NOTHING RETURNING.
    A returned row means this call created the record; no row means another
    delivery (concurrent or earlier) already did. Never a check-then-insert.
    The caller owns the transaction.
    """
    now = now or utcnow()

    stmt = (
        upsert_insert(session, IngestedEvent)
        .values(
            event_id=event_id,
            type=attrs.type,
            tenant_id=attrs.tenant_id,
            membership_id=attrs.membership_id,
            occurred_at=attrs.occurred_at,
            received_at=now,
            processed=False,
            payload=attrs.payload,
        )
        .on_conflict_do_nothing(index_elements=["event_id"])
        .returning(IngestedEvent.event_id)
    )
    res = await session.execute(stmt)
    inserted = res.scalar_one_or_none()

    if inserted is None:
        logger.info(f"Event {event_id} already recorded outcome=duplicate")
        return AdmitResult(event_id=event_id, already_existed=True)

    return AdmitResult(event_id=event_id, already_existed=False)


async def get_event(session: AsyncSession, event_id: str) -> Optional[IngestedEvent]:
    return await session.get(IngestedEvent, event_id)


async def mark_processed(
    session: AsyncSession,
    event_id: str,
    *,
    success: bool,
    error: Optional[str] = None,
) -> None:
    """Flips the processed flag once the event's job has run."""
    values = {"processed": True, "last_error": None} if success else {"last_error": error}
    await session.execute(
        update(IngestedEvent).where(IngestedEvent.event_id == event_id).values(**values)
    )


async def find_unqueued_events(
    session: AsyncSession,
    *,
    older_than: datetime,
    limit: int = 100,
) -> list[IngestedEvent]:
    """
    Admitted events that never got a job.

    Covers the gap between committing an admission and enqueueing its job:
    unprocessed events received before `older_than` with no job, in any state,
    carrying their id as singleton key. Dead-lettered events stay dead.
    """
    has_job = exists().where(Job.singleton_key == IngestedEvent.event_id)
    stmt = (
        select(IngestedEvent)
        .where(
            IngestedEvent.processed.is_(False),
            IngestedEvent.received_at < older_than,
            ~has_job,
        )
        .order_by(IngestedEvent.received_at.asc())
        .limit(limit)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())
