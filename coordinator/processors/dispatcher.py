import logging
from typing import Any, assert_never

import pydantic

from coordinator.domain.errors import PermanentError
from coordinator.domain.jobs import (
    WebhookEventJob, ReminderBatchJob, WEBHOOK_QUEUE, REMINDER_QUEUE, parse_job_payload,
)
from coordinator.domain.models import JobContext
from coordinator.processors.reminder_batch import ReminderBatchProcessor
from coordinator.processors.webhook_event import WebhookEventProcessor
from coordinator.queue.runtime import QueueRuntime

logger = logging.getLogger(__name__)


class JobDispatcher:
    """Queue handler routing each job to the processor for its kind."""

    def __init__(self, webhook: WebhookEventProcessor, reminders: ReminderBatchProcessor):
        self.webhook = webhook
        self.reminders = reminders

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        try:
            payload = parse_job_payload(ctx.payload)
        except pydantic.ValidationError as e:
            raise PermanentError(f"Unrecognized payload for job {ctx.id}: {e}") from e

        match payload:
            case WebhookEventJob():
                return await self.webhook.process(payload)
            case ReminderBatchJob():
                return await self.reminders.process(payload)
            case _:
                assert_never(payload)

    def register(self, runtime: QueueRuntime) -> None:
        runtime.work(WEBHOOK_QUEUE, self)
        runtime.work(REMINDER_QUEUE, self)
