from datetime import datetime, timedelta, timezone

from coordinator.domain.retry import backoff_delay_seconds, calculate_next_run


def test_backoff_doubles_from_the_base_delay():
    # retry_count is counted after the failure: first retry waits the base
    assert backoff_delay_seconds(1, 60) == 60
    assert backoff_delay_seconds(2, 60) == 120
    assert backoff_delay_seconds(3, 60) == 240


def test_backoff_is_capped():
    assert backoff_delay_seconds(10, 60, max_delay_seconds=3600) == 3600
    # Huge counts don't build huge integers
    assert backoff_delay_seconds(10_000, 60, max_delay_seconds=3600) == 3600


def test_backoff_with_zero_retries_waits_the_base():
    assert backoff_delay_seconds(0, 30) == 30


def test_jitter_adds_at_most_ten_percent():
    for _ in range(50):
        delay = backoff_delay_seconds(2, 100, jitter=True)
        assert 200 <= delay <= 220


def test_calculate_next_run_offsets_from_now():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert calculate_next_run(now, 2, 300) == now + timedelta(seconds=600)
