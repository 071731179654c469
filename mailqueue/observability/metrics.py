"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from mailqueue.constants import (
    METRIC_CLAIMS_RACE_LOST,
    METRIC_EMAILS_CLAIMED,
    METRIC_EMAILS_ENQUEUED,
    METRIC_EMAILS_FAILED,
    METRIC_EMAILS_RESCHEDULED,
    METRIC_EMAILS_SENT,
    METRIC_QUEUE_DEPTH,
    METRIC_SEND_DURATION,
)
from mailqueue.types.queue import EmailQueueStats

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the email queue.

    Collects metrics for:
    - Queue depth per workspace and status
    - Enqueued, claimed, sent and failed emails
    - Claims lost to another worker
    - Circuit breaker reschedules
    - Send duration
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of entries in the email queue",
            ["workspace_id", "status"],
            registry=self._registry,
        )

        self.emails_enqueued = Counter(
            METRIC_EMAILS_ENQUEUED,
            "Total number of emails enqueued",
            ["workspace_id", "source_type"],
            registry=self._registry,
        )

        self.emails_claimed = Counter(
            METRIC_EMAILS_CLAIMED,
            "Total number of entries claimed for sending",
            ["workspace_id"],
            registry=self._registry,
        )

        self.claims_race_lost = Counter(
            METRIC_CLAIMS_RACE_LOST,
            "Total number of claims lost to another worker",
            ["workspace_id"],
            registry=self._registry,
        )

        self.emails_sent = Counter(
            METRIC_EMAILS_SENT,
            "Total number of emails sent",
            ["workspace_id"],
            registry=self._registry,
        )

        self.emails_failed = Counter(
            METRIC_EMAILS_FAILED,
            "Total number of failed send attempts",
            ["workspace_id", "permanent"],
            registry=self._registry,
        )

        self.emails_rescheduled = Counter(
            METRIC_EMAILS_RESCHEDULED,
            "Total number of entries rescheduled without burning an attempt",
            ["workspace_id", "integration_id"],
            registry=self._registry,
        )

        self.send_duration = Histogram(
            METRIC_SEND_DURATION,
            "Email send duration in seconds",
            ["workspace_id", "provider_kind"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

    def record_enqueued(self, workspace_id: str, source_type: str, count: int = 1) -> None:
        """Record enqueued entries."""
        self.emails_enqueued.labels(workspace_id=workspace_id, source_type=source_type).inc(count)

    def record_claimed(self, workspace_id: str, count: int = 1) -> None:
        """Record successful claims."""
        self.emails_claimed.labels(workspace_id=workspace_id).inc(count)

    def record_race_lost(self, workspace_id: str) -> None:
        """Record a claim lost to another worker."""
        self.claims_race_lost.labels(workspace_id=workspace_id).inc()

    def record_sent(self, workspace_id: str, provider_kind: str, duration_seconds: float) -> None:
        """Record a delivered email."""
        self.emails_sent.labels(workspace_id=workspace_id).inc()
        self.send_duration.labels(
            workspace_id=workspace_id, provider_kind=provider_kind
        ).observe(duration_seconds)

    def record_failed(self, workspace_id: str, permanent: bool) -> None:
        """Record a failed send attempt."""
        self.emails_failed.labels(
            workspace_id=workspace_id, permanent=str(permanent).lower()
        ).inc()

    def record_rescheduled(self, workspace_id: str, integration_id: str) -> None:
        """Record a voluntary reschedule."""
        self.emails_rescheduled.labels(
            workspace_id=workspace_id, integration_id=integration_id
        ).inc()

    def update_queue_depth(self, workspace_id: str, stats: EmailQueueStats) -> None:
        """Publish the live queue counts of a workspace."""
        self.queue_depth.labels(workspace_id=workspace_id, status="pending").set(stats.pending)
        self.queue_depth.labels(workspace_id=workspace_id, status="processing").set(
            stats.processing
        )
        self.queue_depth.labels(workspace_id=workspace_id, status="failed").set(stats.failed)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, expose the default registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port)
    return _metrics


def get_metrics() -> MetricsCollector:
    """Get the metrics collector instance, creating it on first use."""
    if _metrics is None:
        return setup_metrics()
    return _metrics
