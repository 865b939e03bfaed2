from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any
from uuid import UUID

from coordinator.domain.states import JobState

@dataclass(frozen=True)
class EnqueueOptions:
    singleton_key: Optional[str] = None
    retry_limit: int = 3
    retry_delay_base: int = 60
    priority: int = 0
    run_after: Optional[datetime] = None
    expire_in_seconds: int = 24 * 60 * 60

@dataclass(frozen=True)
class EventAttrs:
    type: str
    occurred_at: datetime
    tenant_id: Optional[str] = None
    membership_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)

@dataclass(frozen=True)
class AdmitResult:
    event_id: str
    already_existed: bool

@dataclass
class JobContext:
    """What a handler sees of the job it is executing."""
    id: UUID
    queue_name: str
    payload: dict[str, Any]
    state: JobState
    retry_count: int
    retry_limit: int
    started_at: Optional[datetime] = None
