"""Email queue table

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "email_queue",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column("source_type", sa.String(20), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("integration_id", sa.String(255), nullable=False),
        sa.Column("provider_kind", sa.String(50), nullable=False),
        sa.Column("contact_email", sa.String(255), nullable=False),
        sa.Column("message_id", sa.String(255), nullable=False),
        sa.Column("template_id", sa.String(255), nullable=False, server_default=""),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("next_retry_at", sa.DateTime, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.text("(now() at time zone 'utc')"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.text("(now() at time zone 'utc')"),
        ),
        sa.Column("processed_at", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'failed')",
            name="email_queue_status",
        ),
        sa.CheckConstraint(
            "source_type IN ('broadcast', 'automation', 'transactional')",
            name="email_queue_source_type",
        ),
    )

    # Create partial index for queue polling
    op.execute("""
        CREATE INDEX idx_email_queue_pending
        ON email_queue (priority, created_at)
        WHERE status = 'pending'
    """)

    op.create_index("idx_email_queue_next_retry", "email_queue", ["next_retry_at"])

    # Create partial index for failed entries awaiting retry
    op.execute("""
        CREATE INDEX idx_email_queue_retry
        ON email_queue (next_retry_at)
        WHERE status = 'failed'
    """)

    op.create_index("idx_email_queue_source", "email_queue", ["source_type", "source_id"])
    op.create_index("idx_email_queue_integration", "email_queue", ["integration_id"])


def downgrade() -> None:
    op.drop_index("idx_email_queue_integration")
    op.drop_index("idx_email_queue_source")
    op.execute("DROP INDEX IF EXISTS idx_email_queue_retry")
    op.drop_index("idx_email_queue_next_retry")
    op.execute("DROP INDEX IF EXISTS idx_email_queue_pending")

    op.drop_table("email_queue")
