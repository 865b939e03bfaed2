from fastapi import APIRouter

from coordinator.api.deps import ServicesDep, SchedulerAuth
from coordinator.scheduler.ticker import run_maintenance, refresh_queue_metrics

router = APIRouter()

@router.post("/maintenance", dependencies=[SchedulerAuth])
async def trigger_maintenance(services: ServicesDep):
    """Expire, recover stale, prune rate limits and reconcile, on demand."""
    summary = await run_maintenance(services)
    await refresh_queue_metrics(services)
    return {"success": True, **summary}
