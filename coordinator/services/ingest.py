import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coordinator.api.v1.metrics import WEBHOOK_EVENTS_TOTAL, RECONCILED_EVENTS_TOTAL
from coordinator.commands.enqueue_job import enqueue_job
from coordinator.domain.errors import ValidationError, TransientError
from coordinator.domain.jobs import WebhookEventJob, dump_job_payload, queue_for
from coordinator.domain.models import EnqueueOptions, EventAttrs
from coordinator.domain.states import Outcome
from coordinator.services.idempotency import admit, find_unqueued_events
from coordinator.utils.clock import utcnow, as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    duplicate: bool
    enqueued: bool
    job_id: Optional[str] = None


@dataclass(frozen=True)
class WebhookJobDefaults:
    retry_limit: int = 3
    retry_delay_base: int = 60
    expire_in_seconds: int = 24 * 60 * 60
    priority: int = 1

    def options_for(self, event_id: str) -> EnqueueOptions:
        # The event id doubles as singleton key: one live job per event
        return EnqueueOptions(
            singleton_key=event_id,
            retry_limit=self.retry_limit,
            retry_delay_base=self.retry_delay_base,
            priority=self.priority,
            expire_in_seconds=self.expire_in_seconds,
        )


def _parse_occurred_at(value: Any, default: datetime) -> datetime:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError("created_at must be a timestamp")
    if isinstance(value, (int, float)):
        # Milliseconds when implausibly large for seconds
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return _parse_occurred_at(int(text), default)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"created_at is not a valid timestamp: {value!r}") from e
        return as_utc(parsed)
    raise ValidationError("created_at must be a timestamp")


def _membership_id(event_type: str, data: dict[str, Any]) -> Optional[str]:
    if data.get("membership_id"):
        return str(data["membership_id"])
    membership = data.get("membership")
    if isinstance(membership, dict) and membership.get("id"):
        return str(membership["id"])
    if isinstance(membership, str) and membership:
        return membership
    # Membership events carry the membership itself as `data`
    if event_type.startswith("membership") and data.get("id"):
        return str(data["id"])
    return None


def parse_event(raw_body: bytes, tenant_header: Optional[str], *, now: datetime) -> tuple[str, EventAttrs]:
    """Validates a webhook body and extracts what admission needs."""
    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError(f"Body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise ValidationError("Body must be a JSON object")

    event_id = body.get("id") or body.get("whop_event_id")
    if not event_id or not isinstance(event_id, (str, int)):
        raise ValidationError("Missing event id")
    event_type = body.get("type")
    if not event_type or not isinstance(event_type, str):
        raise ValidationError("Missing event type")

    data = body.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("data must be an object")

    tenant_id = tenant_header or data.get("company_id")

    attrs = EventAttrs(
        type=event_type,
        occurred_at=_parse_occurred_at(body.get("created_at"), now),
        tenant_id=str(tenant_id) if tenant_id else None,
        membership_id=_membership_id(event_type, data),
        payload=body,
    )
    return str(event_id), attrs


def _webhook_job(event_id: str, attrs: EventAttrs) -> WebhookEventJob:
    return WebhookEventJob(
        event_id=event_id,
        event_type=attrs.type,
        tenant_id=attrs.tenant_id,
        membership_id=attrs.membership_id,
        occurred_at=attrs.occurred_at,
    )


async def ingest_webhook(
    session_factory: async_sessionmaker[AsyncSession],
    raw_body: bytes,
    *,
    tenant_header: Optional[str] = None,
    defaults: WebhookJobDefaults = WebhookJobDefaults(),
    now: Optional[datetime] = None,
) -> IngestResult:
    """
    Admits a verified webhook and schedules its processing.

    Raises TransientError when admission itself can't reach the store.

    1. Admission is committed on its own, so a later failure can't undo it.
    2. Only the first admission enqueues; duplicates stop here.
    3. An enqueue failure is logged and reported, never raised: the event is
       durable and the reconciliation sweep enqueues it later.
    """
    now = now or utcnow()
    event_id, attrs = parse_event(raw_body, tenant_header, now=now)

    try:
        async with session_factory() as session:
            async with session.begin():
                admitted = await admit(session, event_id, attrs, now=now)
    except (SQLAlchemyError, OSError) as e:
        # Nothing durable yet, the sender has to redeliver
        logger.error(f"Event {event_id} could not be admitted: {e}")
        raise TransientError("Event store unavailable, retry later") from e

    if admitted.already_existed:
        WEBHOOK_EVENTS_TOTAL.labels(outcome=Outcome.DUPLICATE).inc()
        return IngestResult(event_id=event_id, duplicate=True, enqueued=False)

    WEBHOOK_EVENTS_TOTAL.labels(outcome=Outcome.ADMITTED).inc()

    job = _webhook_job(event_id, attrs)
    try:
        async with session_factory() as session:
            async with session.begin():
                job_id = await enqueue_job(
                    session, queue_for(job), dump_job_payload(job), defaults.options_for(event_id), now=now
                )
    except (SQLAlchemyError, OSError, TransientError) as e:
        logger.error(f"Event {event_id} admitted but enqueue failed, left for reconciliation: {e}")
        return IngestResult(event_id=event_id, duplicate=False, enqueued=False)

    logger.info(f"Event {event_id} ({attrs.type}) admitted as job {job_id} outcome=admitted")
    return IngestResult(event_id=event_id, duplicate=False, enqueued=True, job_id=str(job_id))


async def reconcile_unqueued_events(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    older_than: datetime,
    defaults: WebhookJobDefaults = WebhookJobDefaults(),
    limit: int = 100,
    now: Optional[datetime] = None,
) -> int:
    """Enqueues admitted events whose job was never created. Returns how many."""
    now = now or utcnow()

    async with session_factory() as session:
        async with session.begin():
            events = await find_unqueued_events(session, older_than=older_than, limit=limit)
            for event in events:
                attrs = EventAttrs(
                    type=event.type,
                    occurred_at=as_utc(event.occurred_at),
                    tenant_id=event.tenant_id,
                    membership_id=event.membership_id,
                )
                job = _webhook_job(event.event_id, attrs)
                await enqueue_job(
                    session, queue_for(job), dump_job_payload(job), defaults.options_for(event.event_id), now=now
                )

    if events:
        RECONCILED_EVENTS_TOTAL.inc(len(events))
        logger.warning(f"Re-enqueued {len(events)} admitted events that had no job")
    return len(events)
