"""
Per-integration circuit breaker.

After ``threshold`` consecutive provider failures an integration is skipped
for ``cooldown``. Once the cooldown has elapsed a single probe is let
through: success closes the circuit, failure opens it again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from mailqueue.clock import Clock, utcnow
from mailqueue.exceptions import SendError

logger = logging.getLogger(__name__)


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerStats:
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: datetime | None = None


class IntegrationCircuitBreaker:
    """Tracks consecutive provider failures per integration."""

    def __init__(
        self,
        threshold: int = 5,
        cooldown: timedelta = timedelta(minutes=1),
        clock: Clock = utcnow,
    ):
        """
        Initialize the breaker.

        Args:
            threshold: Consecutive provider failures that open the circuit.
            cooldown: How long an open circuit stays open.
            clock: Source of "now" (naive UTC).
        """
        self.threshold = max(threshold, 1)
        self.cooldown = cooldown
        self._clock = clock
        self._circuits: dict[str, CircuitBreakerStats] = {}

    def is_open(self, integration_id: str) -> bool:
        """
        Whether sends through the integration must be skipped.

        An open circuit whose cooldown has elapsed moves to half-open and
        reports closed, letting the next send act as the probe.
        """
        circuit = self._circuits.get(integration_id)
        if circuit is None or circuit.state != CircuitState.OPEN:
            return False

        if circuit.opened_at is not None and self._clock() - circuit.opened_at >= self.cooldown:
            circuit.state = CircuitState.HALF_OPEN
            logger.info(
                "Circuit half-open, probing integration",
                extra={"integration_id": integration_id},
            )
            return False

        return True

    def record_failure(self, integration_id: str, error: SendError) -> None:
        """
        Count a failed send.

        Only provider errors count; recipient-side failures say nothing
        about the health of the integration.
        """
        if not error.provider_error:
            return

        circuit = self._circuits.setdefault(integration_id, CircuitBreakerStats())
        circuit.consecutive_failures += 1

        if circuit.state == CircuitState.HALF_OPEN or (
            circuit.state == CircuitState.CLOSED
            and circuit.consecutive_failures >= self.threshold
        ):
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            logger.warning(
                "Circuit opened",
                extra={
                    "integration_id": integration_id,
                    "consecutive_failures": circuit.consecutive_failures,
                },
            )

    def record_success(self, integration_id: str) -> None:
        """Close the circuit of an integration."""
        circuit = self._circuits.pop(integration_id, None)
        if circuit is not None and circuit.state != CircuitState.CLOSED:
            logger.info("Circuit closed", extra={"integration_id": integration_id})

    def get_stats(self) -> dict[str, CircuitBreakerStats]:
        return {
            integration_id: CircuitBreakerStats(
                state=circuit.state,
                consecutive_failures=circuit.consecutive_failures,
                opened_at=circuit.opened_at,
            )
            for integration_id, circuit in self._circuits.items()
        }
