"""
Known job kinds.

Payloads are a tagged union discriminated on `kind`; the dispatcher matches on
the parsed model, so adding a kind without a handler is caught by the type
checker (`assert_never`) rather than at runtime.
"""
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

WEBHOOK_QUEUE = "webhook-processing"
REMINDER_QUEUE = "reminder-processing"


class WebhookEventJob(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["webhook_event"] = "webhook_event"
    event_id: str
    event_type: str
    tenant_id: Optional[str] = None
    membership_id: Optional[str] = None
    occurred_at: datetime


class ReminderBatchJob(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["reminder_batch"] = "reminder_batch"
    tenant_id: str


JobPayload = Annotated[Union[WebhookEventJob, ReminderBatchJob], Field(discriminator="kind")]

_payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_job_payload(data: dict[str, Any]) -> WebhookEventJob | ReminderBatchJob:
    return _payload_adapter.validate_python(data)


def dump_job_payload(payload: WebhookEventJob | ReminderBatchJob) -> dict[str, Any]:
    return payload.model_dump(mode="json")


def queue_for(payload: WebhookEventJob | ReminderBatchJob) -> str:
    match payload:
        case WebhookEventJob():
            return WEBHOOK_QUEUE
        case ReminderBatchJob():
            return REMINDER_QUEUE


def reminder_singleton_key(tenant_id: str) -> str:
    return f"reminders:{tenant_id}"
