"""
SQLAlchemy database models.
Defines the email_queue table.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from mailqueue.constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    EmailQueueSourceType,
    EmailQueueStatus,
)
from mailqueue.types.queue import EmailQueuePayload, unmarshal_payload


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class EmailQueueEntry(Base):
    """
    One pending, in-flight or failed email send attempt chain.

    Successfully sent entries are deleted, so the table never holds
    delivery history.

    Key constraints:
    - attempts only grows when an entry is claimed
    - at most one worker holds an entry in processing, enforced by the
      conditional claim update rather than by any in-process lock
    """

    __tablename__ = "email_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # Status and priority
    status: Mapped[EmailQueueStatus] = mapped_column(
        Enum(
            EmailQueueStatus,
            name="email_queue_status",
            native_enum=False,
            length=20,
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=EmailQueueStatus.PENDING,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_PRIORITY)

    # Origin
    source_type: Mapped[EmailQueueSourceType] = mapped_column(
        Enum(
            EmailQueueSourceType,
            name="email_queue_source_type",
            native_enum=False,
            length=20,
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    integration_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_kind: Mapped[str] = mapped_column(String(50), nullable=False)

    # Email identification
    contact_email: Mapped[str] = mapped_column(String(255), nullable=False)
    message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    template_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
        default=dict,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Timestamps (naive UTC)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # Polling pending entries by priority then age
        Index(
            "idx_email_queue_pending",
            "priority",
            "created_at",
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("idx_email_queue_next_retry", "next_retry_at"),
        # Failed entries waiting for their retry time
        Index(
            "idx_email_queue_retry",
            "next_retry_at",
            postgresql_where=text("status = 'failed'"),
            sqlite_where=text("status = 'failed'"),
        ),
        # Broadcast/automation progress tracking
        Index("idx_email_queue_source", "source_type", "source_id"),
        Index("idx_email_queue_integration", "integration_id"),
    )

    @property
    def email_payload(self) -> EmailQueuePayload:
        """The payload parsed into its typed form."""
        return unmarshal_payload(self.payload)

    @property
    def is_retryable(self) -> bool:
        """Check if the entry may be attempted again."""
        return self.attempts < self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining delivery attempts."""
        return max(0, self.max_attempts - self.attempts)

    def __repr__(self) -> str:
        return (
            f"EmailQueueEntry(id={self.id}, status={self.status}, "
            f"priority={self.priority}, attempt={self.attempts}/{self.max_attempts})"
        )
