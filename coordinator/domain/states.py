from enum import StrEnum, auto

class JobState(StrEnum):
    CREATED = auto()    # Enqueued, waiting for a worker
    RETRY = auto()      # Failed recoverably, waiting for run_after
    ACTIVE = auto()     # Picked up by a worker
    COMPLETED = auto()  # Handler succeeded
    CANCELLED = auto()  # Expired or cancelled before completion
    FAILED = auto()     # Dead letter: retries exhausted or permanent error

NON_TERMINAL_STATES = (JobState.CREATED, JobState.RETRY, JobState.ACTIVE)
RUNNABLE_STATES = (JobState.CREATED, JobState.RETRY)
TERMINAL_STATES = (JobState.COMPLETED, JobState.CANCELLED, JobState.FAILED)

# Predicate of the partial unique index on jobs.singleton_key. Kept as literal SQL
# so the ON CONFLICT target matches the index on both Postgres and SQLite.
SINGLETON_ACTIVE_PREDICATE = "state IN ('created', 'retry', 'active')"

class JobEvent(StrEnum):
    CREATED = auto()
    ACTIVATED = auto()
    COMPLETED = auto()
    RETRIED = auto()
    FAILED = auto()
    CANCELLED = auto()
    EXPIRED = auto()
    RECOVERED = auto()

class Outcome(StrEnum):
    """Expected steady-state results of correct concurrent operation. Never errors."""
    ADMITTED = auto()
    DUPLICATE = auto()
    SINGLETON_COLLAPSED = auto()
    LOCK_NOT_ACQUIRED = auto()
    SKIPPED = auto()

class CaseStatus(StrEnum):
    OPEN = auto()
    RECOVERED = auto()
    CLOSED = auto()
