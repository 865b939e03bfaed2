import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coordinator.clients.notifications import NotificationClient
from coordinator.db.models import RecoveryCase
from coordinator.domain.errors import PermanentError, TransientError
from coordinator.domain.jobs import ReminderBatchJob
from coordinator.domain.states import Outcome
from coordinator.processors.cases import list_open_cases, record_attempt, should_send_reminder
from coordinator.utils.clock import utcnow
from coordinator.utils.locking import AdvisoryLock, tenant_reminder_resource

logger = logging.getLogger(__name__)


class ReminderBatchProcessor:
    """
    One reminder run for one tenant.

    Runs for the same tenant never overlap: the run holds the tenant's
    advisory lock, and an instance that can't get it exits without doing
    anything. Different tenants run in parallel.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock: AdvisoryLock,
        client: NotificationClient,
        *,
        offsets_days: Sequence[int] = (0, 2, 4),
        min_hours_between_nudges: int = 12,
        max_cases_per_run: int = 50,
        max_concurrent_sends: int = 5,
        incentive_days: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.lock = lock
        self.client = client
        self.offsets_days = list(offsets_days)
        self.min_hours_between_nudges = min_hours_between_nudges
        self.max_cases_per_run = max_cases_per_run
        self.max_concurrent_sends = max(1, max_concurrent_sends)
        self.incentive_days = incentive_days
        self.clock = clock

    async def process(self, job: ReminderBatchJob) -> dict[str, Any]:
        resource = tenant_reminder_resource(job.tenant_id)
        if not await self.lock.try_acquire(resource, metric_label="tenant_reminders"):
            logger.info(f"Reminder run for tenant {job.tenant_id} owned elsewhere outcome=lock_not_acquired")
            return {"outcome": Outcome.LOCK_NOT_ACQUIRED, "tenant_id": job.tenant_id}
        try:
            return await self._run(job.tenant_id)
        finally:
            await self.lock.release(resource)

    async def _run(self, tenant_id: str) -> dict[str, Any]:
        now = self.clock()

        # 1. Collect candidates
        async with self.session_factory() as session:
            cases = await list_open_cases(session, tenant_id, self.max_cases_per_run)

        due = []
        for case in cases:
            decision = should_send_reminder(case, self.offsets_days, now, self.min_hours_between_nudges)
            if decision.should_send:
                due.append((case, decision.attempt_number))

        # 2. Send in bounded batches
        sent = raced = permanent = transient = 0
        for i in range(0, len(due), self.max_concurrent_sends):
            batch = due[i:i + self.max_concurrent_sends]
            results = await asyncio.gather(
                *(self._nudge(tenant_id, case, attempt, now) for case, attempt in batch),
                return_exceptions=True,
            )
            for (case, attempt), result in zip(batch, results):
                if isinstance(result, PermanentError):
                    permanent += 1
                    logger.warning(f"Reminder {attempt} for case {case.id} rejected: {result}")
                elif isinstance(result, Exception):
                    transient += 1
                    logger.error(f"Reminder {attempt} for case {case.id} failed: {result}")
                elif isinstance(result, BaseException):
                    raise result
                elif result:
                    sent += 1
                else:
                    raced += 1

        summary = {
            "outcome": "processed",
            "tenant_id": tenant_id,
            "candidates": len(cases),
            "due": len(due),
            "sent": sent,
            "already_advanced": raced,
            "rejected": permanent,
            "failed": transient,
        }
        logger.info(
            f"Reminder run for tenant {tenant_id}: {sent} sent, {transient} failed, "
            f"{permanent} rejected, {len(cases) - len(due)} not due"
        )

        # 3. Retry the whole run later; cases already advanced are not due again
        if transient:
            raise TransientError(f"{transient} of {len(due)} reminders for tenant {tenant_id} failed")
        return summary

    async def _nudge(self, tenant_id: str, case: RecoveryCase, attempt: int, now: datetime) -> bool:
        idempotency_key = f"{case.id}:{attempt}"

        await self.client.send_reminder(
            tenant_id,
            case.membership_id,
            user_id=case.user_id,
            attempt=attempt,
            idempotency_key=idempotency_key,
        )

        incentive: Optional[int] = None
        if attempt == 1 and self.incentive_days > 0:
            await self.client.add_free_days(
                tenant_id,
                case.membership_id,
                self.incentive_days,
                idempotency_key=f"{idempotency_key}:incentive",
            )
            incentive = self.incentive_days

        async with self.session_factory() as session:
            async with session.begin():
                return await record_attempt(
                    session,
                    case.id,
                    previous_attempts=case.attempts,
                    now=now,
                    incentive_days=incentive,
                )
