import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coordinator.commands.enqueue_job import enqueue_job
from coordinator.db.models import IngestedEvent
from coordinator.domain.errors import PermanentError
from coordinator.domain.jobs import (
    WebhookEventJob, ReminderBatchJob, REMINDER_QUEUE, dump_job_payload, reminder_singleton_key,
)
from coordinator.domain.models import EnqueueOptions
from coordinator.domain.states import CaseStatus, Outcome
from coordinator.processors.cases import open_case, settle_case
from coordinator.services.idempotency import get_event, mark_processed
from coordinator.utils.clock import utcnow, as_utc

logger = logging.getLogger(__name__)

PAYMENT_FAILED = "payment_failed"
PAYMENT_SUCCEEDED = "payment_succeeded"
MEMBERSHIP_WENT_VALID = "membership_went_valid"
MEMBERSHIP_WENT_INVALID = "membership_went_invalid"

SETTLING_EVENTS = {
    PAYMENT_SUCCEEDED: CaseStatus.RECOVERED,
    MEMBERSHIP_WENT_VALID: CaseStatus.RECOVERED,
    MEMBERSHIP_WENT_INVALID: CaseStatus.CLOSED,
}


def _user_id(payload: dict[str, Any]) -> Optional[str]:
    data = payload.get("data") or {}
    if data.get("user_id"):
        return str(data["user_id"])
    user = data.get("user")
    if isinstance(user, dict) and user.get("id"):
        return str(user["id"])
    return None


class WebhookEventProcessor:
    """
    Applies one admitted webhook event to the recovery cases.

    Safe to run more than once for the same event: a processed event is
    skipped, opening a case is insert-or-nothing and settling only touches
    an open case.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        reminder_options: Callable[[str], EnqueueOptions],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.reminder_options = reminder_options
        self.clock = clock

    async def process(self, job: WebhookEventJob) -> dict[str, Any]:
        async with self.session_factory() as session:
            event = await get_event(session, job.event_id)

        if event is None:
            raise PermanentError(f"Event {job.event_id} was never admitted")
        if event.processed:
            logger.info(f"Event {job.event_id} already processed outcome=skipped")
            return {"outcome": Outcome.SKIPPED, "event_id": job.event_id}

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    effect = await self._apply(session, job, event)
                    await mark_processed(session, job.event_id, success=True)
        except Exception as e:
            async with self.session_factory() as session:
                async with session.begin():
                    await mark_processed(session, job.event_id, success=False, error=str(e))
            raise

        return {"outcome": "processed", "event_id": job.event_id, "event_type": job.event_type, "effect": effect}

    async def _apply(self, session: AsyncSession, job: WebhookEventJob, event: IngestedEvent) -> str:
        now = self.clock()
        tenant_id = job.tenant_id or event.tenant_id
        if not tenant_id:
            raise PermanentError(f"Event {job.event_id} has no tenant")

        if job.event_type != PAYMENT_FAILED and job.event_type not in SETTLING_EVENTS:
            return "ignored"

        membership_id = job.membership_id or event.membership_id
        if not membership_id:
            raise PermanentError(f"Event {job.event_id} ({job.event_type}) has no membership id")

        if job.event_type == PAYMENT_FAILED:
            created = await open_case(
                session,
                tenant_id,
                membership_id,
                user_id=_user_id(event.payload or {}),
                failed_at=as_utc(job.occurred_at),
                now=now,
            )
            # Same transaction as the case: no case without its reminder run
            await enqueue_job(
                session,
                REMINDER_QUEUE,
                dump_job_payload(ReminderBatchJob(tenant_id=tenant_id)),
                self.reminder_options(tenant_id),
                now=now,
            )
            return "case_opened" if created else "case_already_open"

        status = SETTLING_EVENTS[job.event_type]
        changed = await settle_case(session, tenant_id, membership_id, status, now=now)
        return f"case_{status}" if changed else "no_open_case"


def reminder_options_factory(
    retry_limit: int,
    retry_delay_base: int,
    expire_in_seconds: int,
) -> Callable[[str], EnqueueOptions]:
    def build(tenant_id: str) -> EnqueueOptions:
        return EnqueueOptions(
            singleton_key=reminder_singleton_key(tenant_id),
            retry_limit=retry_limit,
            retry_delay_base=retry_delay_base,
            expire_in_seconds=expire_in_seconds,
        )
    return build
