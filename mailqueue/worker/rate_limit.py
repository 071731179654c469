"""
Per-integration send rate limiting.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

# Floor applied to configured rates, in emails per minute
MIN_RATE_PER_MINUTE = 1


@dataclass
class TokenBucket:
    """
    Token bucket for rate limiting.

    Tokens may go negative: each reservation takes one token immediately and
    the caller waits until the debt is repaid, so concurrent waiters queue
    up instead of racing for the next token.
    """

    capacity: float
    tokens: float
    refill_rate: float  # tokens per second
    last_refill: float

    def _refill(self, now: float) -> None:
        elapsed = max(now - self.last_refill, 0.0)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, now: float, tokens: float = 1.0) -> bool:
        """
        Try to consume tokens from the bucket.

        Returns:
            True if tokens were consumed, False if rate limited.
        """
        self._refill(now)

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True

        return False

    def reserve(self, now: float, tokens: float = 1.0) -> float:
        """
        Take tokens unconditionally.

        Returns:
            Seconds to wait before acting on the reservation.
        """
        self._refill(now)
        self.tokens -= tokens
        if self.tokens >= 0:
            return 0.0
        return -self.tokens / self.refill_rate

    def set_rate(self, now: float, refill_rate: float) -> None:
        """Change the rate, keeping the tokens earned at the old one."""
        self._refill(now)
        self.refill_rate = refill_rate


@dataclass
class RateLimiterStats:
    rate_per_second: float
    rate_per_minute: float
    burst: int


def _refill_rate(per_minute: int) -> float:
    return max(per_minute, MIN_RATE_PER_MINUTE) / 60.0


class IntegrationRateLimiter:
    """
    Rate limiter keeping one token bucket per email integration.

    Buckets hold a single token (no bursts). The rate comes from the entry
    being sent and is updated in place whenever it changes, so all entries
    of an integration share one budget.
    """

    def __init__(
        self,
        timer: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the rate limiter.

        Args:
            timer: Monotonic time source in seconds.
            sleep: Coroutine used to wait for a reservation.
        """
        self._timer = timer
        self._sleep = sleep
        self._buckets: dict[str, TokenBucket] = {}

    def get_or_create_limiter(self, integration_id: str, per_minute: int) -> TokenBucket:
        """
        Get the bucket of an integration, creating or re-rating it.

        Args:
            integration_id: The integration.
            per_minute: Allowed emails per minute. Values below 1 are raised
                to 1.
        """
        rate = _refill_rate(per_minute)
        now = self._timer()

        bucket = self._buckets.get(integration_id)
        if bucket is None:
            bucket = TokenBucket(capacity=1, tokens=1, refill_rate=rate, last_refill=now)
            self._buckets[integration_id] = bucket
        elif bucket.refill_rate != rate:
            bucket.set_rate(now, rate)
        return bucket

    def allow(self, integration_id: str, per_minute: int) -> bool:
        """Take a token if one is available right now."""
        bucket = self.get_or_create_limiter(integration_id, per_minute)
        return bucket.consume(self._timer())

    def reserve(self, integration_id: str, per_minute: int) -> float:
        """Reserve a token and return the delay before it may be used."""
        bucket = self.get_or_create_limiter(integration_id, per_minute)
        return bucket.reserve(self._timer())

    async def wait(self, integration_id: str, per_minute: int) -> None:
        """
        Wait until an email may be sent through the integration.

        Cancellation propagates to the caller.
        """
        delay = self.reserve(integration_id, per_minute)
        if delay > 0:
            await self._sleep(delay)

    def get_current_rate(self, integration_id: str) -> float:
        """Current rate in tokens per second, 0 for unknown integrations."""
        bucket = self._buckets.get(integration_id)
        return bucket.refill_rate if bucket is not None else 0.0

    def get_stats(self) -> dict[str, RateLimiterStats]:
        return {
            integration_id: RateLimiterStats(
                rate_per_second=bucket.refill_rate,
                rate_per_minute=bucket.refill_rate * 60,
                burst=int(bucket.capacity),
            )
            for integration_id, bucket in self._buckets.items()
        }

    def remove(self, integration_id: str) -> None:
        """Forget the bucket of an integration."""
        self._buckets.pop(integration_id, None)

    def clear(self) -> None:
        self._buckets.clear()
