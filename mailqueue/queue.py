"""
Tenant-aware email queue service.

Every operation takes the workspace id first, resolves the workspace
database through the injected connection resolver and runs in its own
transaction.
"""

from collections import Counter
from collections.abc import Sequence
from datetime import datetime

from mailqueue.clock import Clock, utcnow
from mailqueue.constants import (
    SPAN_CLAIM,
    SPAN_ENQUEUE,
    SPAN_FETCH_PENDING,
    SPAN_RECORD_OUTCOME,
    EmailQueueSourceType,
    EmailQueueStatus,
)
from mailqueue.db.connection import ConnectionResolver, workspace_session
from mailqueue.db.models import EmailQueueEntry
from mailqueue.db.repository import EmailQueueRepository
from mailqueue.observability.metrics import MetricsCollector, get_metrics
from mailqueue.observability.tracing import get_tracer
from mailqueue.types.queue import EmailQueueStats


class EmailQueueService:
    """
    Entry point used by producers, workers and progress reporting.

    Producers call ``enqueue``; workers call ``fetch_pending`` /
    ``mark_as_processing`` (or ``claim_pending``) and then one of the
    outcome methods; other subsystems read the stats methods.
    """

    def __init__(
        self,
        resolver: ConnectionResolver,
        clock: Clock = utcnow,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the service.

        Args:
            resolver: Maps workspace ids to their databases.
            clock: Source of "now" (naive UTC).
            metrics: Metrics collector. Defaults to the global one.
        """
        self._resolver = resolver
        self._clock = clock
        self._metrics = metrics or get_metrics()

    @property
    def clock(self) -> Clock:
        return self._clock

    # Enqueuer

    async def enqueue(self, workspace_id: str, entries: Sequence[EmailQueueEntry]) -> None:
        """
        Persist entries for a workspace, all or nothing.

        Raises:
            PayloadMarshalError: A payload is not serializable; nothing written.
            QueueConnectionError: The workspace database is unreachable.
            QueueStorageError: The insert failed; nothing written.
        """
        if not entries:
            return

        with get_tracer().start_as_current_span(SPAN_ENQUEUE) as span:
            span.set_attribute("workspace_id", workspace_id)
            span.set_attribute("count", len(entries))

            async with workspace_session(self._resolver, workspace_id) as session:
                await EmailQueueRepository(session, self._clock).enqueue(entries)

        by_source = Counter(str(entry.source_type) for entry in entries)
        for source_type, count in by_source.items():
            self._metrics.record_enqueued(workspace_id, source_type, count)

    # Claim / dispatch

    async def fetch_pending(self, workspace_id: str, limit: int) -> list[EmailQueueEntry]:
        """Eligible entries in dispatch order, without claiming them."""
        with get_tracer().start_as_current_span(SPAN_FETCH_PENDING) as span:
            span.set_attribute("workspace_id", workspace_id)
            span.set_attribute("limit", limit)

            async with workspace_session(self._resolver, workspace_id) as session:
                return await EmailQueueRepository(session, self._clock).fetch_pending(limit)

    async def mark_as_processing(
        self, workspace_id: str, entry_id: str
    ) -> EmailQueueEntry | None:
        """
        Claim one entry.

        Returns:
            The claimed entry with its incremented attempts, or None when
            the race was lost; the caller moves on.
        """
        async with workspace_session(self._resolver, workspace_id) as session:
            claimed = await EmailQueueRepository(session, self._clock).mark_as_processing(
                entry_id
            )

        if claimed is not None:
            self._metrics.record_claimed(workspace_id)
        else:
            self._metrics.record_race_lost(workspace_id)
        return claimed

    async def claim_pending(self, workspace_id: str, limit: int) -> list[EmailQueueEntry]:
        """Select and claim up to ``limit`` entries in one transaction."""
        with get_tracer().start_as_current_span(SPAN_CLAIM) as span:
            span.set_attribute("workspace_id", workspace_id)
            span.set_attribute("limit", limit)

            async with workspace_session(self._resolver, workspace_id) as session:
                claimed = await EmailQueueRepository(session, self._clock).claim_pending(limit)

            span.set_attribute("claimed", len(claimed))

        if claimed:
            self._metrics.record_claimed(workspace_id, len(claimed))
        return claimed

    # Outcome recording

    async def mark_as_sent(self, workspace_id: str, entry_id: str) -> int:
        """Delete a delivered entry (idempotent)."""
        with get_tracer().start_as_current_span(SPAN_RECORD_OUTCOME) as span:
            span.set_attribute("outcome", "sent")
            async with workspace_session(self._resolver, workspace_id) as session:
                return await EmailQueueRepository(session, self._clock).mark_as_sent(entry_id)

    async def mark_as_failed(
        self,
        workspace_id: str,
        entry_id: str,
        error_message: str,
        next_retry_at: datetime | None,
    ) -> int:
        """Record a failed attempt with its retry time."""
        with get_tracer().start_as_current_span(SPAN_RECORD_OUTCOME) as span:
            span.set_attribute("outcome", "failed")
            async with workspace_session(self._resolver, workspace_id) as session:
                return await EmailQueueRepository(session, self._clock).mark_as_failed(
                    entry_id, error_message, next_retry_at
                )

    async def set_next_retry(
        self,
        workspace_id: str,
        entry_id: str,
        next_retry_at: datetime,
        skip_in_flight: bool = False,
    ) -> int:
        """Reschedule without burning an attempt."""
        with get_tracer().start_as_current_span(SPAN_RECORD_OUTCOME) as span:
            span.set_attribute("outcome", "rescheduled")
            async with workspace_session(self._resolver, workspace_id) as session:
                return await EmailQueueRepository(session, self._clock).set_next_retry(
                    entry_id, next_retry_at, skip_in_flight=skip_in_flight
                )

    async def delete(self, workspace_id: str, entry_id: str) -> int:
        """Permanently remove an entry."""
        with get_tracer().start_as_current_span(SPAN_RECORD_OUTCOME) as span:
            span.set_attribute("outcome", "deleted")
            async with workspace_session(self._resolver, workspace_id) as session:
                return await EmailQueueRepository(session, self._clock).delete(entry_id)

    # Introspection

    async def get(self, workspace_id: str, entry_id: str) -> EmailQueueEntry | None:
        async with workspace_session(self._resolver, workspace_id) as session:
            return await EmailQueueRepository(session, self._clock).get(entry_id)

    async def get_stats(self, workspace_id: str) -> EmailQueueStats:
        """Live pending/processing/failed counts; also published as a gauge."""
        async with workspace_session(self._resolver, workspace_id) as session:
            stats = await EmailQueueRepository(session, self._clock).get_stats()

        self._metrics.update_queue_depth(workspace_id, stats)
        return stats

    async def get_by_source_id(
        self,
        workspace_id: str,
        source_type: EmailQueueSourceType,
        source_id: str,
    ) -> list[EmailQueueEntry]:
        async with workspace_session(self._resolver, workspace_id) as session:
            return await EmailQueueRepository(session, self._clock).get_by_source_id(
                source_type, source_id
            )

    async def count_by_source_and_status(
        self,
        workspace_id: str,
        source_type: EmailQueueSourceType,
        source_id: str,
        status: EmailQueueStatus,
    ) -> int:
        async with workspace_session(self._resolver, workspace_id) as session:
            return await EmailQueueRepository(
                session, self._clock
            ).count_by_source_and_status(source_type, source_id, status)
