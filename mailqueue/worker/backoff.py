"""
Retry scheduling for failed sends.
"""

from datetime import datetime, timedelta

from mailqueue.clock import utcnow


def calculate_next_retry_time(attempts: int, now: datetime | None = None) -> datetime:
    """
    Compute when a failed entry may be retried.

    Exponential backoff of ``2^(attempts-1)`` minutes: 1, 2, 4, 8 ...

    Args:
        attempts: Attempts made so far, including the one that just failed.
            Values below 1 are treated as 1.
        now: Reference time (naive UTC). Defaults to the current time.

    Returns:
        The earliest retry time.
    """
    if now is None:
        now = utcnow()
    attempts = max(attempts, 1)
    return now + timedelta(minutes=2 ** (attempts - 1))
