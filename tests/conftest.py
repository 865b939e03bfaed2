"""
Pytest configuration and fixtures

Provides fixtures for:
- A file-backed SQLite database per test (concurrent sessions get their own connections)
- Services wired exactly as in production, with fakes for the lock and the notification API
- An httpx client over the ASGI app
"""
import os
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")

import json
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from coordinator.auth.signature import sign_payload
from coordinator.bootstrap import Services, build_services
from coordinator.db import models  # noqa: F401
from coordinator.db.session import Base, build_sessionmaker
from coordinator.settings import Settings

TEST_SECRET = "test-webhook-secret"
TEST_SCHEDULER_TOKEN = "test-scheduler-token"


class FakeAdvisoryLock:
    """
    In-process stand-in for AdvisoryLock.

    Instances sharing a `registry` behave like separate app instances talking
    to the same database: only one of them can hold a resource at a time.
    """

    def __init__(self, registry: Optional[set] = None):
        self.registry = registry if registry is not None else set()
        self._mine: set[str] = set()
        self.attempts: list[tuple[str, bool]] = []

    async def try_acquire(self, resource_name: str, *, metric_label: str = "advisory") -> bool:
        acquired = resource_name not in self.registry
        if acquired:
            self.registry.add(resource_name)
            self._mine.add(resource_name)
        self.attempts.append((resource_name, acquired))
        return acquired

    async def release(self, resource_name: str) -> None:
        if resource_name in self._mine:
            self._mine.discard(resource_name)
            self.registry.discard(resource_name)

    async def release_all(self) -> None:
        for name in list(self._mine):
            await self.release(name)

    def is_held(self, resource_name: str) -> bool:
        return resource_name in self._mine

    @asynccontextmanager
    async def held(self, resource_name: str, *, metric_label: str = "advisory"):
        acquired = await self.try_acquire(resource_name)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(resource_name)


class FakeNotificationClient:
    """Records outbound calls; `failures` maps membership id to the exception to raise."""

    def __init__(self):
        self.reminders: list[dict[str, Any]] = []
        self.free_days: list[dict[str, Any]] = []
        self.failures: dict[str, Exception] = {}

    async def send_reminder(self, tenant_id, membership_id, *, user_id, attempt, idempotency_key):
        if membership_id in self.failures:
            raise self.failures[membership_id]
        call = {
            "tenant_id": tenant_id,
            "membership_id": membership_id,
            "user_id": user_id,
            "attempt": attempt,
            "idempotency_key": idempotency_key,
        }
        self.reminders.append(call)
        return {"ok": True}

    async def add_free_days(self, tenant_id, membership_id, days, *, idempotency_key):
        self.free_days.append({
            "tenant_id": tenant_id,
            "membership_id": membership_id,
            "days": days,
            "idempotency_key": idempotency_key,
        })
        return {"ok": True}

    async def close(self):
        pass


@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    """Create async test database engine"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'coordinator.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return build_sessionmaker(async_engine)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        ENVIRONMENT="test",
        SQLALCHEMY_DATABASE_URI=f"sqlite+aiosqlite:///{tmp_path / 'coordinator.db'}",
        WEBHOOK_SECRET=TEST_SECRET,
        WEBHOOK_REQUIRE_TIMESTAMP=False,
        RATE_LIMIT_FAIL_POLICY="closed",
        SCHEDULER_TOKEN=TEST_SCHEDULER_TOKEN,
        JOB_RETRY_JITTER=False,
        RUN_BACKGROUND_WORKER=False,
        INCENTIVE_DAYS=0,
    )


@pytest.fixture
def fake_lock() -> FakeAdvisoryLock:
    return FakeAdvisoryLock()


@pytest.fixture
def fake_notifications() -> FakeNotificationClient:
    return FakeNotificationClient()


@pytest.fixture
def services(test_settings, async_engine, fake_lock, fake_notifications) -> Services:
    return build_services(
        test_settings,
        engine=async_engine,
        lock=fake_lock,
        notifications=fake_notifications,
    )


@pytest.fixture(scope="function")
async def test_client(services):
    """Create test client over the app with injected services"""
    from coordinator.main import create_app

    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def webhook_body(
    event_id: str = "evt_1",
    event_type: str = "payment_failed",
    *,
    company_id: Optional[str] = "tenant-a",
    membership_id: Optional[str] = "mem_1",
    created_at: Any = None,
) -> bytes:
    data: dict[str, Any] = {}
    if company_id:
        data["company_id"] = company_id
    if membership_id:
        data["membership_id"] = membership_id
    data["user_id"] = "user_1"
    body: dict[str, Any] = {"id": event_id, "type": event_type, "data": data}
    if created_at is not None:
        body["created_at"] = created_at
    return json.dumps(body).encode("utf-8")


def signed_headers(body: bytes, secret: str = TEST_SECRET) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Webhook-Signature": sign_payload(body, secret),
        "X-Webhook-Timestamp": str(int(time.time())),
    }
