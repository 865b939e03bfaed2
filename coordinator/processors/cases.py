"""
Recovery case bookkeeping shared by the webhook and reminder processors.

A case tracks one membership whose payment failed: opened by a
`payment_failed` event, nudged by reminder runs, and settled (recovered or
closed) by later membership events. Every write here is idempotent so a
re-delivered job can replay it safely.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import select, update, text
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.db.compat import upsert_insert
from coordinator.db.models import RecoveryCase, OPEN_CASE_PREDICATE
from coordinator.domain.states import CaseStatus
from coordinator.utils.clock import as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderDecision:
    should_send: bool
    attempt_number: int = 0


def should_send_reminder(
    case: RecoveryCase,
    offsets_days: Sequence[int],
    now: datetime,
    min_hours_between_nudges: int = 12,
) -> ReminderDecision:
    """
    A reminder is due when fewer have been sent than offsets have elapsed
    since the first failure (offsets [0, 2, 4] mean day 0, day 2, day 4),
    and the previous nudge is at least `min_hours_between_nudges` old.
    """
    elapsed_days = (now - as_utc(case.first_failure_at)).days
    expected = sum(1 for offset in offsets_days if elapsed_days >= offset)

    if case.attempts >= expected:
        return ReminderDecision(False)

    if case.last_nudge_at is not None:
        since_last = now - as_utc(case.last_nudge_at)
        if since_last < timedelta(hours=min_hours_between_nudges):
            return ReminderDecision(False)

    return ReminderDecision(True, case.attempts + 1)


async def open_case(
    session: AsyncSession,
    tenant_id: str,
    membership_id: str,
    *,
    user_id: Optional[str],
    failed_at: datetime,
    now: datetime,
) -> bool:
    """Opens a case unless one is already open for the membership. True if created."""
    stmt = (
        upsert_insert(session, RecoveryCase)
        .values(
            tenant_id=tenant_id,
            membership_id=membership_id,
            user_id=user_id,
            status=CaseStatus.OPEN,
            attempts=0,
            incentive_days=0,
            first_failure_at=failed_at,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=["tenant_id", "membership_id"],
            index_where=text(OPEN_CASE_PREDICATE),
        )
        .returning(RecoveryCase.id)
    )
    res = await session.execute(stmt)
    return res.scalar_one_or_none() is not None


async def settle_case(
    session: AsyncSession,
    tenant_id: str,
    membership_id: str,
    status: CaseStatus,
    *,
    now: datetime,
) -> int:
    """Moves the open case for a membership to `status`. Returns rows changed (0 or 1)."""
    res = await session.execute(
        update(RecoveryCase)
        .where(
            RecoveryCase.tenant_id == tenant_id,
            RecoveryCase.membership_id == membership_id,
            RecoveryCase.status == CaseStatus.OPEN,
        )
        .values(status=status, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


async def list_open_cases(session: AsyncSession, tenant_id: str, limit: int) -> list[RecoveryCase]:
    stmt = (
        select(RecoveryCase)
        .where(RecoveryCase.tenant_id == tenant_id, RecoveryCase.status == CaseStatus.OPEN)
        .order_by(RecoveryCase.first_failure_at.asc())
        .limit(limit)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def tenants_with_open_cases(session: AsyncSession) -> list[str]:
    stmt = (
        select(RecoveryCase.tenant_id)
        .where(RecoveryCase.status == CaseStatus.OPEN)
        .distinct()
        .order_by(RecoveryCase.tenant_id)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def record_attempt(
    session: AsyncSession,
    case_id,
    *,
    previous_attempts: int,
    now: datetime,
    incentive_days: Optional[int] = None,
) -> bool:
    """
    Advances a case's attempt counter if nobody else already did.

    Conditional on `attempts = previous_attempts`, so two runs that both saw
    the same case count one attempt between them.
    """
    values = {"attempts": previous_attempts + 1, "last_nudge_at": now, "updated_at": now}
    if incentive_days is not None:
        values["incentive_days"] = incentive_days
    res = await session.execute(
        update(RecoveryCase)
        .where(
            RecoveryCase.id == case_id,
            RecoveryCase.attempts == previous_attempts,
            RecoveryCase.status == CaseStatus.OPEN,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (res.rowcount or 0) == 1
