from datetime import datetime
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    String, Integer, Boolean, DateTime, ForeignKey, Index, CheckConstraint,
    JSON, Uuid, text, func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coordinator.db.session import Base
from coordinator.domain.states import JobState, JobEvent, CaseStatus, SINGLETON_ACTIVE_PREDICATE
from coordinator.utils.clock import utcnow

# JSONB on Postgres, plain JSON (text) elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

OPEN_CASE_PREDICATE = "status = 'open'"


class IngestedEvent(Base):
    __tablename__ = "ingested_events"

    # Provider-assigned id; the primary key is the exactly-once gate
    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    tenant_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    membership_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    processed: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    __table_args__ = (
        Index("ix_ingested_events_unprocessed", "processed", "received_at"),
    )


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    queue_name: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    state: Mapped[JobState] = mapped_column(String, default=JobState.CREATED, nullable=False)
    singleton_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Retry policy, per job
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    retry_limit: Mapped[int] = mapped_column(Integer, default=3)
    retry_delay: Mapped[int] = mapped_column(Integer, default=60)
    priority: Mapped[int] = mapped_column(Integer, default=0)

    # Scheduling
    run_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expire_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    events: Mapped[list["JobEventLog"]] = relationship(
        "JobEventLog", back_populates="job", cascade="all, delete-orphan"
    )

    __table_args__ = (
        # The claim query: queue + runnable state + due
        Index("ix_jobs_fetch", "queue_name", "state", "run_after"),
        # At most one live job per singleton key
        Index(
            "uq_jobs_singleton_active",
            "singleton_key",
            unique=True,
            postgresql_where=text(SINGLETON_ACTIVE_PREDICATE),
            sqlite_where=text(SINGLETON_ACTIVE_PREDICATE),
        ),
    )


class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    # Context (error message, retry count, next run)
    meta: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    job: Mapped["Job"] = relationship("Job", back_populates="events")


class RateLimitCounter(Base):
    __tablename__ = "rate_limits"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    window_bucket_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        CheckConstraint("count >= 0", name="ck_rate_limits_count_non_negative"),
        Index("ix_rate_limits_bucket", "window_bucket_start"),
    )


class RecoveryCase(Base):
    __tablename__ = "recovery_cases"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    membership_id: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    status: Mapped[CaseStatus] = mapped_column(String, default=CaseStatus.OPEN, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    incentive_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    first_failure_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_nudge_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        Index(
            "uq_recovery_cases_open_membership",
            "tenant_id",
            "membership_id",
            unique=True,
            postgresql_where=text(OPEN_CASE_PREDICATE),
            sqlite_where=text(OPEN_CASE_PREDICATE),
        ),
    )
