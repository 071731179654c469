"""
Unit tests for retry backoff.
"""

from datetime import datetime, timedelta

import pytest

from mailqueue.clock import utcnow
from mailqueue.worker.backoff import calculate_next_retry_time

NOW = datetime(2026, 1, 15, 12, 0, 0)


@pytest.mark.parametrize(
    ("attempts", "minutes"),
    [(1, 1), (2, 2), (3, 4), (4, 8), (5, 16)],
)
def test_exponential_backoff(attempts: int, minutes: int):
    """Test that each attempt doubles the wait."""
    assert calculate_next_retry_time(attempts, NOW) == NOW + timedelta(minutes=minutes)


@pytest.mark.parametrize("attempts", [0, -3])
def test_non_positive_attempts_treated_as_first(attempts: int):
    """Test that attempts below one wait a single minute."""
    assert calculate_next_retry_time(attempts, NOW) == NOW + timedelta(minutes=1)


def test_defaults_to_current_time():
    """Test that the retry time is in the future without an explicit now."""
    before = utcnow()

    retry_at = calculate_next_retry_time(1)

    assert retry_at.tzinfo is None
    assert retry_at >= before + timedelta(minutes=1) - timedelta(seconds=1)
