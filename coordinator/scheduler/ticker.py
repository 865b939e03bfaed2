import logging
from datetime import datetime, timedelta
from typing import Optional

from coordinator.api.v1.metrics import QUEUE_DEPTH
from coordinator.bootstrap import Services
from coordinator.domain.states import JobState
from coordinator.services.ingest import reconcile_unqueued_events
from coordinator.utils.clock import utcnow

logger = logging.getLogger(__name__)


async def run_maintenance(services: Services, *, now: Optional[datetime] = None) -> dict:
    """
    Periodic housekeeping, safe to run from any instance at any time:
    1. Cancel waiting jobs past their expiry
    2. Re-deliver ACTIVE jobs whose worker vanished
    3. Prune rate-limit buckets nobody touched recently
    4. Enqueue admitted events that never got a job
    """
    now = now or utcnow()
    cfg = services.settings

    # 1. Expiry
    expired = await services.queue.expire(now=now)

    # 2. Stale active jobs
    recovered = await services.queue.recover_stale(cfg.JOB_ACTIVE_TIMEOUT_SECONDS, now=now)

    # 3. Rate-limit storage
    pruned = await services.rate_limiter.prune_stale(now - timedelta(seconds=cfg.RATE_LIMIT_RETENTION_SECONDS))

    # 4. Admission/enqueue gap
    reconciled = await reconcile_unqueued_events(
        services.session_factory,
        older_than=now - timedelta(seconds=cfg.RECONCILE_AFTER_SECONDS),
        defaults=services.webhook_defaults,
        now=now,
    )

    summary = {
        "expired": expired,
        "recovered": recovered,
        "pruned_rate_limits": pruned,
        "reconciled": reconciled,
    }
    if any(summary.values()):
        logger.info(f"Maintenance: {summary}")
    return summary


async def refresh_queue_metrics(services: Services) -> dict:
    # Set from a full count each time rather than inc/dec on transitions, so
    # the gauge is right on every instance regardless of who did the work.
    stats = await services.queue.stats()
    for queue_name, counts in stats["queues"].items():
        for state in JobState:
            QUEUE_DEPTH.labels(queue=queue_name, state=state).set(counts[state])
    return stats
