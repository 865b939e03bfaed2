import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from coordinator.db.models import RecoveryCase
from coordinator.domain.errors import PermanentError, TransientError
from coordinator.domain.jobs import ReminderBatchJob
from coordinator.domain.states import CaseStatus, Outcome
from coordinator.processors.cases import should_send_reminder
from coordinator.processors.reminder_batch import ReminderBatchProcessor
from coordinator.utils.clock import as_utc
from coordinator.utils.locking import tenant_reminder_resource

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
OFFSETS = [0, 2, 4]


def _case(*, days_ago: float = 0, attempts: int = 0, nudged_hours_ago=None) -> RecoveryCase:
    return RecoveryCase(
        tenant_id="tenant-a",
        membership_id="mem_1",
        status=CaseStatus.OPEN,
        attempts=attempts,
        incentive_days=0,
        first_failure_at=NOW - timedelta(days=days_ago),
        last_nudge_at=None if nudged_hours_ago is None else NOW - timedelta(hours=nudged_hours_ago),
    )


class TestShouldSendReminder:
    def test_first_reminder_is_due_immediately(self):
        decision = should_send_reminder(_case(), OFFSETS, NOW)
        assert decision.should_send
        assert decision.attempt_number == 1

    def test_not_due_between_offsets(self):
        assert not should_send_reminder(_case(days_ago=1, attempts=1, nudged_hours_ago=24), OFFSETS, NOW).should_send

    def test_second_reminder_on_day_two(self):
        decision = should_send_reminder(_case(days_ago=2, attempts=1, nudged_hours_ago=48), OFFSETS, NOW)
        assert decision.should_send
        assert decision.attempt_number == 2

    def test_recent_nudge_throttles_a_due_reminder(self):
        case = _case(days_ago=2, attempts=1, nudged_hours_ago=2)
        assert not should_send_reminder(case, OFFSETS, NOW, min_hours_between_nudges=12).should_send

    def test_missed_offsets_are_sent_one_at_a_time(self):
        decision = should_send_reminder(_case(days_ago=5), OFFSETS, NOW)
        assert decision.attempt_number == 1

    def test_nothing_after_the_last_offset(self):
        assert not should_send_reminder(_case(days_ago=30, attempts=3, nudged_hours_ago=24 * 20), OFFSETS, NOW).should_send


async def _open_cases(session_factory, tenant_id: str, *memberships: str, failed_at=NOW):
    async with session_factory() as session:
        async with session.begin():
            for membership_id in memberships:
                session.add(RecoveryCase(
                    tenant_id=tenant_id,
                    membership_id=membership_id,
                    user_id=f"user_{membership_id}",
                    status=CaseStatus.OPEN,
                    attempts=0,
                    incentive_days=0,
                    first_failure_at=failed_at,
                ))


async def _cases(session_factory, tenant_id: str = "tenant-a") -> dict[str, RecoveryCase]:
    async with session_factory() as session:
        res = await session.execute(select(RecoveryCase).where(RecoveryCase.tenant_id == tenant_id))
        return {case.membership_id: case for case in res.scalars().all()}


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def processor(session_factory, fake_lock, fake_notifications, clock):
    return ReminderBatchProcessor(
        session_factory,
        fake_lock,
        fake_notifications,
        offsets_days=OFFSETS,
        max_concurrent_sends=2,
        clock=clock,
    )


async def test_sends_due_reminders_and_records_attempts(processor, session_factory, fake_notifications):
    await _open_cases(session_factory, "tenant-a", "mem_1", "mem_2", "mem_3")
    await _open_cases(session_factory, "tenant-b", "mem_9")

    summary = await processor.process(ReminderBatchJob(tenant_id="tenant-a"))

    assert summary["sent"] == 3
    assert summary["due"] == 3
    assert {r["membership_id"] for r in fake_notifications.reminders} == {"mem_1", "mem_2", "mem_3"}
    cases = await _cases(session_factory)
    for case in cases.values():
        assert case.attempts == 1
        assert as_utc(case.last_nudge_at) == NOW
    keys = {r["idempotency_key"] for r in fake_notifications.reminders}
    assert keys == {f"{case.id}:1" for case in cases.values()}


async def test_rerun_does_not_resend(processor, session_factory, fake_notifications):
    await _open_cases(session_factory, "tenant-a", "mem_1")

    await processor.process(ReminderBatchJob(tenant_id="tenant-a"))
    summary = await processor.process(ReminderBatchJob(tenant_id="tenant-a"))

    assert summary["sent"] == 0
    assert len(fake_notifications.reminders) == 1


async def test_next_offset_sends_second_reminder(processor, session_factory, fake_notifications, clock):
    await _open_cases(session_factory, "tenant-a", "mem_1")
    await processor.process(ReminderBatchJob(tenant_id="tenant-a"))

    clock.now = NOW + timedelta(days=2)
    await processor.process(ReminderBatchJob(tenant_id="tenant-a"))

    assert [r["attempt"] for r in fake_notifications.reminders] == [1, 2]
    assert (await _cases(session_factory))["mem_1"].attempts == 2


async def test_lock_held_elsewhere_means_no_side_effects(processor, session_factory, fake_lock, fake_notifications):
    await _open_cases(session_factory, "tenant-a", "mem_1")
    other_instance = type(fake_lock)(fake_lock.registry)
    assert await other_instance.try_acquire(tenant_reminder_resource("tenant-a"))

    summary = await processor.process(ReminderBatchJob(tenant_id="tenant-a"))

    assert summary["outcome"] == Outcome.LOCK_NOT_ACQUIRED
    assert fake_notifications.reminders == []
    assert (await _cases(session_factory))["mem_1"].attempts == 0


async def test_transient_failure_raises_after_finishing_the_batch(
    processor, session_factory, fake_lock, fake_notifications
):
    await _open_cases(session_factory, "tenant-a", "mem_1", "mem_2")
    fake_notifications.failures["mem_2"] = TransientError("503 from notification API")

    with pytest.raises(TransientError):
        await processor.process(ReminderBatchJob(tenant_id="tenant-a"))

    cases = await _cases(session_factory)
    assert cases["mem_1"].attempts == 1
    assert cases["mem_2"].attempts == 0
    assert not fake_lock.is_held(tenant_reminder_resource("tenant-a"))

    # Retry: only the case that failed is still due
    del fake_notifications.failures["mem_2"]
    summary = await processor.process(ReminderBatchJob(tenant_id="tenant-a"))
    assert summary["sent"] == 1
    assert [r["membership_id"] for r in fake_notifications.reminders] == ["mem_1", "mem_2"]


async def test_permanent_rejection_is_counted_not_raised(processor, session_factory, fake_notifications):
    await _open_cases(session_factory, "tenant-a", "mem_1", "mem_2")
    fake_notifications.failures["mem_2"] = PermanentError("membership deleted")

    summary = await processor.process(ReminderBatchJob(tenant_id="tenant-a"))

    assert summary["sent"] == 1
    assert summary["rejected"] == 1
    assert summary["failed"] == 0


async def test_incentive_granted_with_first_reminder_only(
    session_factory, fake_lock, fake_notifications, clock
):
    processor = ReminderBatchProcessor(
        session_factory, fake_lock, fake_notifications, offsets_days=OFFSETS, incentive_days=3, clock=clock,
    )
    await _open_cases(session_factory, "tenant-a", "mem_1")

    await processor.process(ReminderBatchJob(tenant_id="tenant-a"))
    clock.now = NOW + timedelta(days=2)
    await processor.process(ReminderBatchJob(tenant_id="tenant-a"))

    case = (await _cases(session_factory))["mem_1"]
    assert len(fake_notifications.free_days) == 1
    assert fake_notifications.free_days[0]["days"] == 3
    assert fake_notifications.free_days[0]["idempotency_key"] == f"{case.id}:1:incentive"
    assert case.incentive_days == 3


async def test_overlapping_runs_for_one_tenant_send_once(
    session_factory, fake_lock, fake_notifications, clock
):
    await _open_cases(session_factory, "tenant-a", "mem_1", "mem_2")
    instances = [
        ReminderBatchProcessor(
            session_factory, type(fake_lock)(fake_lock.registry), fake_notifications,
            offsets_days=OFFSETS, clock=clock,
        )
        for _ in range(3)
    ]

    results = await asyncio.gather(*(p.process(ReminderBatchJob(tenant_id="tenant-a")) for p in instances))

    outcomes = [r["outcome"] for r in results]
    assert outcomes.count(Outcome.LOCK_NOT_ACQUIRED) == 2
    assert len(fake_notifications.reminders) == 2


async def test_lock_released_after_successful_run(processor, fake_lock):
    await processor.process(ReminderBatchJob(tenant_id="tenant-a"))
    assert fake_lock.registry == set()
