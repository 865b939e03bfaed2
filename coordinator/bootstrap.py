"""
Composition root: builds every long-lived component from Settings.

Nothing below this module reads `settings` itself; components get explicit
values here, so tests can assemble the same graph against another database.
"""
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from coordinator.clients.notifications import NotificationClient
from coordinator.db.session import build_engine, build_sessionmaker
from coordinator.processors.dispatcher import JobDispatcher
from coordinator.processors.reminder_batch import ReminderBatchProcessor
from coordinator.processors.webhook_event import WebhookEventProcessor, reminder_options_factory
from coordinator.domain.models import EnqueueOptions
from coordinator.queue.queue import JobQueue
from coordinator.queue.runtime import QueueRuntime
from coordinator.services.ingest import WebhookJobDefaults
from coordinator.services.rate_limiter import RateLimiter, RateLimitConfig, FailPolicy, build_rate_limit_configs
from coordinator.settings import Settings
from coordinator.utils.locking import AdvisoryLock


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    queue: JobQueue
    runtime: QueueRuntime
    rate_limiter: RateLimiter
    lock: AdvisoryLock
    notifications: NotificationClient
    webhook_defaults: WebhookJobDefaults
    reminder_options: Callable[[str], EnqueueOptions]
    rate_limit_configs: dict[str, RateLimitConfig] = field(default_factory=dict)

    async def close(self):
        await self.runtime.stop()
        await self.lock.release_all()
        await self.notifications.close()
        await self.engine.dispose()


def build_services(
    settings: Settings,
    *,
    engine: Optional[AsyncEngine] = None,
    lock: Optional[AdvisoryLock] = None,
    notifications: Optional[NotificationClient] = None,
) -> Services:
    engine = engine or build_engine(settings.SQLALCHEMY_DATABASE_URI)
    session_factory = build_sessionmaker(engine)
    lock = lock or AdvisoryLock(engine)
    notifications = notifications or NotificationClient(
        settings.NOTIFICATION_API_URL,
        settings.NOTIFICATION_API_KEY,
        timeout=settings.NOTIFICATION_API_TIMEOUT_SECONDS,
    )

    queue = JobQueue(
        session_factory,
        max_retry_delay_seconds=settings.JOB_MAX_RETRY_DELAY_SECONDS,
        retry_jitter=settings.JOB_RETRY_JITTER,
    )
    runtime = QueueRuntime(
        session_factory,
        max_retry_delay_seconds=settings.JOB_MAX_RETRY_DELAY_SECONDS,
        retry_jitter=settings.JOB_RETRY_JITTER,
        poll_interval=settings.WORKER_POLL_INTERVAL_SECONDS,
    )

    reminder_options = reminder_options_factory(
        retry_limit=settings.REMINDER_JOB_RETRY_LIMIT,
        retry_delay_base=settings.REMINDER_JOB_RETRY_DELAY_SECONDS,
        expire_in_seconds=settings.REMINDER_JOB_EXPIRE_SECONDS,
    )
    webhook_processor = WebhookEventProcessor(session_factory, reminder_options=reminder_options)
    reminder_processor = ReminderBatchProcessor(
        session_factory,
        lock,
        notifications,
        offsets_days=settings.REMINDER_OFFSETS_DAYS,
        min_hours_between_nudges=settings.REMINDER_MIN_HOURS_BETWEEN_NUDGES,
        max_cases_per_run=settings.MAX_REMINDER_CASES_PER_RUN,
        max_concurrent_sends=settings.MAX_CONCURRENT_REMINDER_SENDS,
        incentive_days=settings.INCENTIVE_DAYS,
    )
    JobDispatcher(webhook_processor, reminder_processor).register(runtime)

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        queue=queue,
        runtime=runtime,
        rate_limiter=RateLimiter(session_factory, FailPolicy(settings.RATE_LIMIT_FAIL_POLICY)),
        lock=lock,
        notifications=notifications,
        webhook_defaults=WebhookJobDefaults(
            retry_limit=settings.WEBHOOK_JOB_RETRY_LIMIT,
            retry_delay_base=settings.WEBHOOK_JOB_RETRY_DELAY_SECONDS,
            expire_in_seconds=settings.WEBHOOK_JOB_EXPIRE_SECONDS,
        ),
        reminder_options=reminder_options,
        rate_limit_configs=build_rate_limit_configs(
            settings.WEBHOOK_RATE_LIMIT_PER_MINUTE,
            settings.SCHEDULER_RATE_LIMIT_PER_5_MINUTES,
        ),
    )
