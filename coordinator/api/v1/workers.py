from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from coordinator.api.deps import ServicesDep, SchedulerAuth

router = APIRouter()


class DrainRequest(BaseModel):
    max_jobs: Optional[int] = Field(default=None, ge=1, le=1000)
    queues: Optional[list[str]] = None


@router.post("/drain", dependencies=[SchedulerAuth])
async def drain(services: ServicesDep, payload: Optional[DrainRequest] = None):
    """Runs a bounded batch of due jobs inside this request, then returns."""
    payload = payload or DrainRequest()
    max_jobs = payload.max_jobs or services.settings.DRAIN_MAX_JOBS

    queues = payload.queues
    if queues:
        queues = [q for q in queues if q in services.runtime.queues]

    summary = await services.runtime.drain(max_jobs=max_jobs, queues=queues or None)
    return {"success": True, **summary}
