"""
Email queue repository for database operations.
Implements the storage-level enqueue, claim, outcome and introspection
operations for one workspace database.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement, Executable

from mailqueue.clock import Clock, utcnow
from mailqueue.constants import (
    CLAIMABLE_STATUSES,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    STUCK_PROCESSING_TIMEOUT,
    EmailQueueSourceType,
    EmailQueueStatus,
)
from mailqueue.db.models import EmailQueueEntry
from mailqueue.exceptions import PayloadMarshalError, storage_error
from mailqueue.types.queue import EmailQueueStats, marshal_payload

logger = logging.getLogger(__name__)

email_queue = EmailQueueEntry.__table__
c = email_queue.c


def _entry_from_row(row: Any) -> EmailQueueEntry:
    """Build a detached entry from a result row."""
    return EmailQueueEntry(**row._mapping)


def _entry_values(entry: EmailQueueEntry) -> dict[str, Any]:
    return {column.key: getattr(entry, column.key) for column in email_queue.columns}


class EmailQueueRepository:
    """
    Repository for email queue database operations.

    The repository is tenant-agnostic: it works on whatever workspace
    database its session is bound to. It never commits; the caller owns the
    transaction.

    Implements atomic operations for:
    - Batch enqueue in a single transaction
    - Candidate selection with FOR UPDATE SKIP LOCKED
    - Conditional claims that report a lost race instead of raising
    - Outcome recording (sent, failed, rescheduled, deleted)
    """

    def __init__(self, session: AsyncSession, clock: Clock = utcnow):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session of a workspace.
            clock: Source of "now" (naive UTC).
        """
        self._session = session
        self._clock = clock

    async def _execute(self, stmt: Executable, action: str, params: Any = None) -> Any:
        try:
            if params is None:
                return await self._session.execute(stmt)
            return await self._session.execute(stmt, params)
        except SQLAlchemyError as e:
            raise storage_error(f"failed to {action}", e) from e

    # ------------------------------------------------------------------
    # Enqueuer
    # ------------------------------------------------------------------

    async def enqueue(self, entries: Sequence[EmailQueueEntry]) -> None:
        """
        Add entries to the queue.

        Missing ids are generated and defaults applied in place. All payloads
        are marshalled before anything is written, and the rows are inserted
        in one batch so that a failure leaves no partial state once the
        caller rolls back.

        Args:
            entries: Entries to persist.

        Raises:
            PayloadMarshalError: If any payload cannot be serialized.
            QueueStorageError: If the insert fails.
        """
        if not entries:
            return

        payloads = []
        for entry in entries:
            try:
                payloads.append(marshal_payload(entry.payload))
            except PayloadMarshalError as e:
                e.entry_id = entry.id
                raise

        now = self._clock()
        rows = []
        for entry, payload in zip(entries, payloads):
            if not entry.id:
                entry.id = str(uuid4())
            if entry.status is None:
                entry.status = EmailQueueStatus.PENDING
            if entry.priority is None:
                entry.priority = DEFAULT_PRIORITY
            if not entry.max_attempts:
                entry.max_attempts = DEFAULT_MAX_ATTEMPTS
            if entry.attempts is None:
                entry.attempts = 0
            if entry.template_id is None:
                entry.template_id = ""
            entry.payload = payload
            entry.created_at = now
            entry.updated_at = now
            rows.append(_entry_values(entry))

        await self._execute(insert(email_queue), "insert queue entries", rows)

        logger.info("Enqueued emails", extra={"count": len(rows)})

    # ------------------------------------------------------------------
    # Claim / dispatch
    # ------------------------------------------------------------------

    @staticmethod
    def _eligible(now: datetime) -> ColumnElement[bool]:
        """Rows a worker may pick up at ``now``."""
        return or_(
            and_(
                c.status == EmailQueueStatus.PENDING,
                or_(c.next_retry_at.is_(None), c.next_retry_at <= now),
            ),
            and_(
                c.status == EmailQueueStatus.FAILED,
                c.attempts < c.max_attempts,
                c.next_retry_at <= now,
            ),
            # Presumed abandoned by a crashed worker
            and_(
                c.status == EmailQueueStatus.PROCESSING,
                c.updated_at < now - STUCK_PROCESSING_TIMEOUT,
            ),
        )

    @staticmethod
    def _claimable(now: datetime) -> ColumnElement[bool]:
        return or_(
            c.status.in_(CLAIMABLE_STATUSES),
            and_(
                c.status == EmailQueueStatus.PROCESSING,
                c.updated_at < now - STUCK_PROCESSING_TIMEOUT,
            ),
        )

    async def fetch_pending(self, limit: int) -> list[EmailQueueEntry]:
        """
        Select up to ``limit`` entries eligible for sending.

        Orders by priority (lower first), then creation time. Rows locked by
        another in-flight transaction are skipped, so concurrent callers see
        disjoint candidates. The rows are not modified.

        Args:
            limit: Maximum number of entries.

        Returns:
            Eligible entries in dispatch order.
        """
        now = self._clock()
        stmt = (
            select(email_queue)
            .where(self._eligible(now))
            .order_by(c.priority.asc(), c.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )

        result = await self._execute(stmt, "query pending emails")
        return [_entry_from_row(row) for row in result.all()]

    async def _claim(self, entry_id: str, now: datetime) -> EmailQueueEntry | None:
        stmt = (
            update(email_queue)
            .where(and_(c.id == entry_id, self._claimable(now)))
            .values(
                status=EmailQueueStatus.PROCESSING,
                attempts=c.attempts + 1,
                updated_at=now,
            )
            .returning(*email_queue.columns)
        )

        result = await self._execute(stmt, "mark email as processing")
        row = result.first()
        return _entry_from_row(row) if row is not None else None

    async def mark_as_processing(self, entry_id: str) -> EmailQueueEntry | None:
        """
        Atomically claim an entry.

        Succeeds only from pending, failed, or processing older than the
        stuck timeout; increments ``attempts`` by exactly one.

        Args:
            entry_id: The entry id.

        Returns:
            The entry in its post-claim state. None means another worker won
            or the entry is gone; callers skip it and must not retry the
            same id.
        """
        claimed = await self._claim(entry_id, self._clock())
        if claimed is None:
            logger.debug(
                "Entry not claimable, lost race or already resolved",
                extra={"entry_id": entry_id},
            )
        return claimed

    async def claim_pending(self, limit: int) -> list[EmailQueueEntry]:
        """
        Select and claim up to ``limit`` entries in the current transaction.

        Candidates whose claim does not go through are left out of the
        result.

        Args:
            limit: Maximum number of entries.

        Returns:
            Claimed entries with their post-claim state, in dispatch order.
        """
        candidates = await self.fetch_pending(limit)
        now = self._clock()

        claimed = []
        for candidate in candidates:
            entry = await self._claim(candidate.id, now)
            if entry is not None:
                claimed.append(entry)

        if claimed:
            logger.debug(
                "Claimed queue entries",
                extra={"candidates": len(candidates), "claimed": len(claimed)},
            )
        return claimed

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    async def mark_as_sent(self, entry_id: str) -> int:
        """
        Remove an entry after a successful send.

        Idempotent: deleting an absent entry is not an error.

        Returns:
            Number of rows removed (0 or 1).
        """
        result = await self._execute(
            delete(email_queue).where(c.id == entry_id), "delete sent email"
        )
        return result.rowcount

    async def mark_as_failed(
        self,
        entry_id: str,
        error_message: str,
        next_retry_at: datetime | None,
    ) -> int:
        """
        Record a failed attempt and when it may be retried.

        Does not look at ``max_attempts``: the caller decides whether to wait
        for the retry or delete the entry.

        Returns:
            Number of rows updated (0 or 1).
        """
        now = self._clock()
        stmt = (
            update(email_queue)
            .where(c.id == entry_id)
            .values(
                status=EmailQueueStatus.FAILED,
                last_error=error_message,
                next_retry_at=next_retry_at,
                updated_at=now,
                processed_at=now,
            )
        )
        result = await self._execute(stmt, "mark email as failed")
        return result.rowcount

    async def set_next_retry(
        self,
        entry_id: str,
        next_retry_at: datetime,
        skip_in_flight: bool = False,
    ) -> int:
        """
        Reschedule an entry without burning an attempt.

        Puts the entry back to pending at ``next_retry_at``; ``attempts`` is
        left untouched. Used for backpressure such as an open circuit breaker.

        Args:
            entry_id: The entry id.
            next_retry_at: When the entry becomes eligible again.
            skip_in_flight: Leave the entry alone while another worker holds
                a live claim on it (processing, not yet stuck).

        Returns:
            Number of rows updated (0 or 1).
        """
        now = self._clock()
        condition = c.id == entry_id
        if skip_in_flight:
            condition = and_(condition, self._claimable(now))

        stmt = (
            update(email_queue)
            .where(condition)
            .values(
                status=EmailQueueStatus.PENDING,
                next_retry_at=next_retry_at,
                updated_at=now,
            )
        )
        result = await self._execute(stmt, "set next retry")
        return result.rowcount

    async def delete(self, entry_id: str) -> int:
        """
        Permanently remove an entry (retries exhausted).

        Returns:
            Number of rows removed (0 or 1).
        """
        result = await self._execute(
            delete(email_queue).where(c.id == entry_id), "delete queue entry"
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get(self, entry_id: str) -> EmailQueueEntry | None:
        """Get an entry by id, or None if it no longer exists."""
        result = await self._execute(
            select(email_queue).where(c.id == entry_id), "get queue entry"
        )
        row = result.first()
        return _entry_from_row(row) if row is not None else None

    async def get_stats(self) -> EmailQueueStats:
        """Count live entries by status."""
        stmt = select(c.status, func.count()).group_by(c.status)
        result = await self._execute(stmt, "get queue stats")

        stats = EmailQueueStats()
        for status, count in result.all():
            setattr(stats, EmailQueueStatus(status).value, count)
        return stats

    async def get_by_source_id(
        self,
        source_type: EmailQueueSourceType,
        source_id: str,
    ) -> list[EmailQueueEntry]:
        """
        Get the outstanding entries of a broadcast, automation or send.

        Returns:
            Entries ordered by creation time.
        """
        stmt = (
            select(email_queue)
            .where(and_(c.source_type == source_type, c.source_id == source_id))
            .order_by(c.created_at.asc())
        )
        result = await self._execute(stmt, "query by source")
        return [_entry_from_row(row) for row in result.all()]

    async def count_by_source_and_status(
        self,
        source_type: EmailQueueSourceType,
        source_id: str,
        status: EmailQueueStatus,
    ) -> int:
        """Count entries of a source in a given status."""
        stmt = (
            select(func.count())
            .select_from(email_queue)
            .where(
                and_(
                    c.source_type == source_type,
                    c.source_id == source_id,
                    c.status == status,
                )
            )
        )
        result = await self._execute(stmt, "count by source and status")
        return result.scalar_one()
