import random
from datetime import datetime, timedelta

def backoff_delay_seconds(
    retry_count: int,
    base_delay_seconds: int,
    max_delay_seconds: int = 3600,
    jitter: bool = False,
) -> float:
    """
    Exponential backoff for the retry that follows `retry_count` failures.

    Formula:
        delay = min(base * 2 ^ (retry_count - 1), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    retry_count is the value *after* the failure was counted, so the first
    retry waits `base`, the second `2 * base`, the third `4 * base` and so on.
    """
    exponent = max(retry_count - 1, 0)
    # 2^20 * any sane base is far past any cap; avoids building huge ints.
    exponent = min(exponent, 20)

    delay = base_delay_seconds * (2 ** exponent)
    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter:
        # Up to 10% extra so retries of a burst don't land together
        delay += random.uniform(0, delay * 0.1)

    return float(delay)

def calculate_next_run(
    now: datetime,
    retry_count: int,
    base_delay_seconds: int,
    max_delay_seconds: int = 3600,
    jitter: bool = False,
) -> datetime:
    delay = backoff_delay_seconds(retry_count, base_delay_seconds, max_delay_seconds, jitter)
    return now + timedelta(seconds=delay)
