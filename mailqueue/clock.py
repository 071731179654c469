"""
Time source used by the queue.

All queue timestamps are naive UTC. Components take a ``clock`` callable so
that eligibility windows can be evaluated against a controlled time.
"""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(UTC).replace(tzinfo=None)
