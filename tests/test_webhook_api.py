from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import TEST_SCHEDULER_TOKEN, webhook_body, signed_headers
from coordinator.db.models import Job, RecoveryCase
from coordinator.domain.states import CaseStatus, JobState
from coordinator.scheduler.ticker import run_maintenance
from coordinator.services import ingest
from coordinator.services.rate_limiter import RateLimitConfig

EVENTS_URL = "/api/v1/webhooks/events"
AUTH = {"Authorization": f"Bearer {TEST_SCHEDULER_TOKEN}"}


async def _post_event(client, body: bytes, headers=None):
    return await client.post(EVENTS_URL, content=body, headers=headers or signed_headers(body))


async def _jobs(services, queue_name=None) -> list[Job]:
    async with services.session_factory() as session:
        stmt = select(Job)
        if queue_name:
            stmt = stmt.where(Job.queue_name == queue_name)
        return list((await session.execute(stmt)).scalars().all())


class TestWebhookEndpoint:
    async def test_signed_event_is_admitted_and_queued(self, test_client, services):
        response = await _post_event(test_client, webhook_body("evt_1"))

        assert response.status_code == 200
        assert response.json() == {"success": True, "eventId": "evt_1", "duplicate": False}
        [job] = await _jobs(services)
        assert job.queue_name == "webhook-processing"
        assert job.singleton_key == "evt_1"
        assert job.payload["kind"] == "webhook_event"

    async def test_redelivery_is_acknowledged_as_duplicate(self, test_client, services):
        body = webhook_body("evt_1")
        await _post_event(test_client, body)

        response = await _post_event(test_client, body)

        assert response.status_code == 200
        assert response.json()["duplicate"] is True
        assert len(await _jobs(services)) == 1

    async def test_bad_signature_is_rejected(self, test_client, services):
        body = webhook_body("evt_1")

        response = await _post_event(test_client, body, signed_headers(body, secret="wrong"))

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid signature"
        assert await _jobs(services) == []

    async def test_missing_signature_is_rejected(self, test_client):
        response = await test_client.post(EVENTS_URL, content=webhook_body("evt_1"))
        assert response.status_code == 401

    async def test_signed_garbage_is_a_bad_request(self, test_client):
        body = b"{not json"
        response = await _post_event(test_client, body)
        assert response.status_code == 400

    async def test_event_without_id_is_a_bad_request(self, test_client):
        body = b'{"type": "payment_failed", "data": {}}'
        response = await _post_event(test_client, body)
        assert response.status_code == 400

    async def test_tenant_header_overrides_body(self, test_client, services):
        body = webhook_body("evt_1", company_id="from-body")
        headers = {**signed_headers(body), "X-Tenant-ID": "from-header"}

        await _post_event(test_client, body, headers)

        [job] = await _jobs(services)
        assert job.payload["tenant_id"] == "from-header"

    async def test_rate_limit_rejects_with_retry_after(self, test_client, services):
        services.rate_limit_configs["webhooks"] = RateLimitConfig("webhook", 60_000, 2)

        statuses = []
        for i in range(3):
            response = await _post_event(test_client, webhook_body(f"evt_{i}"))
            statuses.append(response.status_code)

        assert statuses == [200, 200, 429]
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-Rate-Limit-Remaining"] == "0"
        assert "X-Rate-Limit-Reset" in response.headers

    async def test_allowed_requests_carry_rate_limit_headers(self, test_client):
        response = await _post_event(test_client, webhook_body("evt_1"))
        assert response.headers["X-Rate-Limit-Remaining"] == "299"

    async def test_enqueue_failure_still_acknowledges_and_reconciles(self, test_client, services, monkeypatch):
        async def broken_enqueue(*args, **kwargs):
            raise OperationalError("INSERT INTO jobs", {}, Exception("database is locked"))

        monkeypatch.setattr(ingest, "enqueue_job", broken_enqueue)
        response = await _post_event(test_client, webhook_body("evt_1"))

        assert response.status_code == 200
        assert response.json() == {"success": True, "eventId": "evt_1", "eventLogged": True}
        assert await _jobs(services) == []

        monkeypatch.undo()
        summary = await run_maintenance(services, now=datetime.now(timezone.utc) + timedelta(minutes=10))

        assert summary["reconciled"] == 1
        [job] = await _jobs(services)
        assert job.singleton_key == "evt_1"

        # Nothing left to reconcile on the next sweep
        again = await run_maintenance(services, now=datetime.now(timezone.utc) + timedelta(minutes=10))
        assert again["reconciled"] == 0


    async def test_store_outage_during_admission_asks_for_redelivery(self, test_client, services, monkeypatch):
        async def broken_admit(*args, **kwargs):
            raise OperationalError("INSERT INTO webhook_events", {}, Exception("connection refused"))

        monkeypatch.setattr(ingest, "admit", broken_admit)
        response = await _post_event(test_client, webhook_body("evt_1"))

        assert response.status_code == 503
        assert "Retry-After" in response.headers
        assert await _jobs(services) == []

        monkeypatch.undo()
        retried = await _post_event(test_client, webhook_body("evt_1"))
        assert retried.status_code == 200
        assert retried.json()["duplicate"] is False

class TestSchedulerEndpoints:
    async def _open_case(self, services, tenant_id, membership_id):
        async with services.session_factory() as session:
            async with session.begin():
                session.add(RecoveryCase(
                    tenant_id=tenant_id,
                    membership_id=membership_id,
                    status=CaseStatus.OPEN,
                    attempts=0,
                    incentive_days=0,
                    first_failure_at=datetime.now(timezone.utc),
                ))

    async def test_requires_token(self, test_client):
        response = await test_client.post("/api/v1/scheduler/reminders")
        assert response.status_code == 401

        response = await test_client.post(
            "/api/v1/scheduler/reminders", headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    async def test_fans_out_one_run_per_tenant(self, test_client, services):
        await self._open_case(services, "tenant-a", "mem_1")
        await self._open_case(services, "tenant-a", "mem_2")
        await self._open_case(services, "tenant-b", "mem_3")

        first = await test_client.post("/api/v1/scheduler/reminders", headers=AUTH)
        second = await test_client.post("/api/v1/scheduler/reminders", headers=AUTH)

        assert first.status_code == 200
        assert first.json()["tenants"] == 2
        # Overlapping triggers collapse onto the live runs
        assert second.json()["jobs"] == first.json()["jobs"]
        assert len(await _jobs(services, "reminder-processing")) == 2

    async def test_drain_runs_queued_work(self, test_client, services, fake_notifications):
        await _post_event(test_client, webhook_body("evt_1", "payment_failed"))

        response = await test_client.post("/api/v1/workers/drain", headers=AUTH, json={"max_jobs": 10})

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 2
        assert body["states"] == {"completed": 2}
        assert len(fake_notifications.reminders) == 1

    async def test_drain_without_body_uses_default_budget(self, test_client):
        response = await test_client.post("/api/v1/workers/drain", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["processed"] == 0

    async def test_maintenance_endpoint(self, test_client):
        response = await test_client.post("/api/v1/admin/maintenance", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {
            "success": True, "expired": 0, "recovered": 0, "pruned_rate_limits": 0, "reconciled": 0,
        }


class TestJobEndpoints:
    async def test_stats_and_job_lookup(self, test_client, services):
        await _post_event(test_client, webhook_body("evt_1"))
        [job] = await _jobs(services)

        stats = (await test_client.get("/api/v1/jobs/stats")).json()
        assert stats["queues"]["webhook-processing"]["created"] == 1

        filtered = (await test_client.get("/api/v1/jobs/stats", params={"queue": "reminder-processing"})).json()
        assert list(filtered["queues"]) == ["reminder-processing"]

        response = await test_client.get(f"/api/v1/jobs/{job.id}")
        assert response.status_code == 200
        assert response.json()["state"] == "created"
        assert response.json()["singleton_key"] == "evt_1"

    async def test_unknown_job_is_404(self, test_client):
        response = await test_client.get("/api/v1/jobs/00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404

    async def test_cancel(self, test_client, services):
        await _post_event(test_client, webhook_body("evt_1"))
        [job] = await _jobs(services)

        assert (await test_client.post(f"/api/v1/jobs/{job.id}/cancel")).status_code == 401

        response = await test_client.post(f"/api/v1/jobs/{job.id}/cancel", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["state"] == JobState.CANCELLED

        missing = await test_client.post("/api/v1/jobs/00000000-0000-0000-0000-000000000000/cancel", headers=AUTH)
        assert missing.status_code == 404

    async def test_cancel_finished_job_conflicts(self, test_client, services):
        await _post_event(test_client, webhook_body("evt_1", "membership_created"))
        await services.runtime.drain()
        [job] = await _jobs(services)
        assert job.state == JobState.COMPLETED

        response = await test_client.post(f"/api/v1/jobs/{job.id}/cancel", headers=AUTH)
        assert response.status_code == 409


class TestOperationalEndpoints:
    async def test_health_reports_queues(self, test_client):
        await _post_event(test_client, webhook_body("evt_1"))

        response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["queues"]["webhook-processing"]["created"] == 1
        assert body["dead_letter"] == 0

    async def test_metrics_exposed(self, test_client):
        await _post_event(test_client, webhook_body("evt_1"))

        response = await test_client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_events_total" in response.text
        assert "rate_limit_decisions_total" in response.text


@pytest.mark.parametrize("created_at", [1_767_225_600, "1767225600000", "2026-01-01T00:00:00Z"])
async def test_created_at_formats_are_accepted(test_client, services, created_at):
    await _post_event(test_client, webhook_body("evt_ts", created_at=created_at))

    [job] = await _jobs(services)
    assert job.payload["occurred_at"].startswith("2026-01-01T00:00:00")
