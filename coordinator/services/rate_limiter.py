import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import StrEnum, auto
from typing import Callable, Optional, Union

from fastapi import Request, Response
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coordinator.api.v1.metrics import RATE_LIMIT_DECISIONS_TOTAL
from coordinator.db.compat import upsert_insert
from coordinator.db.models import RateLimitCounter
from coordinator.domain.errors import RateLimitExceeded
from coordinator.utils.clock import utcnow

logger = logging.getLogger(__name__)


class FailPolicy(StrEnum):
    OPEN = auto()    # store down: admit, flagged degraded
    CLOSED = auto()  # store down: reject


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    reset_at: datetime
    remaining: int
    retry_after_seconds: Optional[int] = None
    degraded: bool = False


@dataclass(frozen=True)
class RateLimitConfig:
    key_prefix: str
    window_ms: int
    max_requests: int


RATE_LIMIT_CONFIGS: dict[str, RateLimitConfig] = {
    "webhooks": RateLimitConfig(key_prefix="webhook", window_ms=60_000, max_requests=300),
    "scheduler": RateLimitConfig(key_prefix="scheduler", window_ms=5 * 60_000, max_requests=20),
    "case_actions": RateLimitConfig(key_prefix="case_action", window_ms=60_000, max_requests=30),
}


def build_rate_limit_configs(
    webhook_per_minute: int,
    scheduler_per_5_minutes: int,
) -> dict[str, RateLimitConfig]:
    configs = dict(RATE_LIMIT_CONFIGS)
    configs["webhooks"] = RateLimitConfig("webhook", 60_000, webhook_per_minute)
    configs["scheduler"] = RateLimitConfig("scheduler", 5 * 60_000, scheduler_per_5_minutes)
    return configs


def bucket_bounds(now: datetime, window_ms: int) -> tuple[datetime, datetime]:
    """Fixed window containing `now`: floor(now_ms / window) * window."""
    now_ms = int(now.timestamp() * 1000)
    start_ms = (now_ms // window_ms) * window_ms
    start = datetime.fromtimestamp(start_ms / 1000, tz=timezone.utc)
    return start, start + timedelta(milliseconds=window_ms)


def _retry_after(reset_at: datetime, now: datetime) -> int:
    return max(1, math.ceil((reset_at - now).total_seconds()))


class RateLimiter:
    """
    Fixed-window counter shared by every instance through the store.

    Allows at most `max_requests` per key per bucket, regardless of how many
    instances are checking concurrently.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fail_policy: FailPolicy,
    ):
        self.session_factory = session_factory
        self.fail_policy = FailPolicy(fail_policy)

    async def check_and_consume(
        self,
        key: str,
        window_ms: int,
        max_requests: int,
        *,
        now: Optional[datetime] = None,
        purpose: Optional[str] = None,
    ) -> RateLimitResult:
        now = now or utcnow()
        purpose = purpose or key.split(":", 1)[0]
        bucket_start, reset_at = bucket_bounds(now, window_ms)

        if max_requests <= 0:
            RATE_LIMIT_DECISIONS_TOTAL.labels(purpose=purpose, decision="rejected").inc()
            return RateLimitResult(
                allowed=False,
                reset_at=reset_at,
                remaining=0,
                retry_after_seconds=_retry_after(reset_at, now),
            )

        try:
            count = await self._consume(key, bucket_start, max_requests, now)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            return self._on_store_error(key, purpose, window_ms, reset_at, e)

        if count is None:
            RATE_LIMIT_DECISIONS_TOTAL.labels(purpose=purpose, decision="rejected").inc()
            return RateLimitResult(
                allowed=False,
                reset_at=reset_at,
                remaining=0,
                retry_after_seconds=_retry_after(reset_at, now),
            )

        RATE_LIMIT_DECISIONS_TOTAL.labels(purpose=purpose, decision="allowed").inc()
        return RateLimitResult(
            allowed=True,
            reset_at=reset_at,
            remaining=max(0, max_requests - count),
        )

    async def _consume(
        self,
        key: str,
        bucket_start: datetime,
        max_requests: int,
        now: datetime,
    ) -> Optional[int]:
        async with self.session_factory() as session:
            async with session.begin():
                # 1. Conditional increment. The WHERE on the update branch keeps
                # rejected calls from inflating the counter; no row back means
                # the bucket is full.
                insert_stmt = upsert_insert(session, RateLimitCounter).values(
                    key=key,
                    window_bucket_start=bucket_start,
                    count=1,
                    updated_at=now,
                )
                stmt = insert_stmt.on_conflict_do_update(
                    index_elements=["key", "window_bucket_start"],
                    set_={"count": RateLimitCounter.count + 1, "updated_at": now},
                    where=RateLimitCounter.count < max_requests,
                ).returning(RateLimitCounter.count)
                res = await session.execute(stmt)
                count = res.scalar_one_or_none()

                # 2. Lazy GC of this key's finished buckets
                await session.execute(
                    delete(RateLimitCounter).where(
                        RateLimitCounter.key == key,
                        RateLimitCounter.window_bucket_start < bucket_start,
                    )
                )
        return count

    def _on_store_error(
        self,
        key: str,
        purpose: str,
        window_ms: int,
        reset_at: datetime,
        error: Exception,
    ) -> RateLimitResult:
        if self.fail_policy == FailPolicy.OPEN:
            logger.error(f"Rate limit store unavailable for {key}, admitting (fail-open): {error}")
            RATE_LIMIT_DECISIONS_TOTAL.labels(purpose=purpose, decision="degraded").inc()
            return RateLimitResult(allowed=True, reset_at=reset_at, remaining=0, degraded=True)

        logger.warning(f"Rate limit store unavailable for {key}, rejecting (fail-closed): {error}")
        RATE_LIMIT_DECISIONS_TOTAL.labels(purpose=purpose, decision="rejected").inc()
        return RateLimitResult(
            allowed=False,
            reset_at=reset_at,
            remaining=0,
            retry_after_seconds=max(1, math.ceil(window_ms / 1000)),
        )

    async def prune_stale(self, older_than: datetime) -> int:
        """Deletes buckets of every key not touched since `older_than`."""
        async with self.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    delete(RateLimitCounter).where(RateLimitCounter.updated_at < older_than)
                )
        return res.rowcount or 0


class RateLimit:
    """
    Route dependency enforcing a named limit.

    `identifier` is a fixed string ("global", "control") or a callable
    deriving one from the request (e.g. the tenant header).
    """

    def __init__(self, config_name: str, identifier: Union[str, Callable[[Request], str]] = "global"):
        self.config_name = config_name
        self.identifier = identifier

    async def __call__(self, request: Request, response: Response) -> RateLimitResult:
        services = request.app.state.services
        config = services.rate_limit_configs[self.config_name]

        ident = self.identifier(request) if callable(self.identifier) else self.identifier
        key = f"{config.key_prefix}:{ident}"

        result = await services.rate_limiter.check_and_consume(
            key, config.window_ms, config.max_requests, purpose=self.config_name
        )

        if not result.allowed:
            raise RateLimitExceeded(result.retry_after_seconds, result.reset_at)

        response.headers["X-Rate-Limit-Reset"] = str(int(result.reset_at.timestamp()))
        response.headers["X-Rate-Limit-Remaining"] = str(result.remaining)
        return result
