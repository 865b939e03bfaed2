from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict

from coordinator.api.deps import ServicesDep, SchedulerAuth
from coordinator.domain.errors import JobNotFoundError, InvalidJobStateError
from coordinator.domain.states import JobState

router = APIRouter()

class JobResponse(BaseModel):
    id: UUID
    queue_name: str
    state: JobState
    payload: dict[str, Any]
    singleton_key: Optional[str] = None
    priority: int
    retry_count: int
    retry_limit: int
    run_after: datetime
    expire_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    model_config = ConfigDict(from_attributes=True)

# Declared before /{job_id} so "stats" isn't parsed as an id
@router.get("/stats")
async def get_stats(services: ServicesDep, queue: Optional[str] = None):
    return await services.queue.stats(queue)

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, services: ServicesDep):
    job = await services.queue.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

@router.post("/{job_id}/cancel", response_model=JobResponse, dependencies=[SchedulerAuth])
async def cancel_job(job_id: UUID, services: ServicesDep):
    try:
        return await services.queue.cancel(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
