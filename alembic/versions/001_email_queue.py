"""Email queue and campaign log tables

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

# Timestamp columns are naive UTC, matching what the application writes.
UTC_NOW = sa.text("(now() AT TIME ZONE 'utc')")

EMAIL_STATUSES = ("pending", "processing", "sent", "failed", "cancelled")
EMAIL_TYPES = ("initial_password", "campaign", "credential", "notification")
EMAIL_LOG_STATUSES = ("sent", "failed")


def _create_enum(name: str, values: Sequence[str]) -> None:
    labels = ", ".join(f"'{value}'" for value in values)
    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE {name} AS ENUM ({labels});
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)


def upgrade() -> None:
    _create_enum("email_status", EMAIL_STATUSES)
    _create_enum("email_type", EMAIL_TYPES)
    _create_enum("email_log_status", EMAIL_LOG_STATUSES)

    op.create_table(
        "email_queue",
        sa.Column("id", sa.BigInteger, sa.Identity(), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(*EMAIL_STATUSES, name="email_status", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "email_type",
            postgresql.ENUM(*EMAIL_TYPES, name="email_type", create_type=False),
            nullable=False,
        ),
        sa.Column("recipient_email", sa.String(255), nullable=False),
        sa.Column("recipient_name", sa.String(255), nullable=True),
        sa.Column("subject", sa.String(500), nullable=False),
        sa.Column("html_content", sa.Text, nullable=True),
        sa.Column("text_content", sa.Text, nullable=True),
        sa.Column("template_id", sa.String(255), nullable=True),
        sa.Column("template_data", postgresql.JSONB, nullable=True),
        sa.Column("from_email", sa.String(255), nullable=False),
        sa.Column("from_name", sa.String(255), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("batch_id", sa.String(36), nullable=True),
        sa.Column("campaign_id", sa.Integer, nullable=True),
        sa.Column("user_id", sa.Integer, nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime, nullable=True),
        sa.Column("next_retry_at", sa.DateTime, nullable=True),
        sa.Column("sent_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=UTC_NOW),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=UTC_NOW),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("max_attempts >= 1", name="ck_email_queue_max_attempts_positive"),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts",
            name="ck_email_queue_attempts_bounded",
        ),
    )

    op.create_index("ix_email_queue_batch_id", "email_queue", ["batch_id"])

    # Claim scan: ready rows in priority then age order
    op.execute("""
        CREATE INDEX ix_email_queue_claim
        ON email_queue (status, next_retry_at, priority DESC, created_at ASC)
    """)

    # Lease recovery scan
    op.execute("""
        CREATE INDEX ix_email_queue_processing_lease
        ON email_queue (last_attempt_at)
        WHERE status = 'processing'
    """)

    op.create_table(
        "email_logs",
        sa.Column("id", sa.BigInteger, sa.Identity(), nullable=False),
        sa.Column("campaign_id", sa.Integer, nullable=False),
        sa.Column("recipient_email", sa.String(255), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(*EMAIL_LOG_STATUSES, name="email_log_status", create_type=False),
            nullable=False,
        ),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("sent_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=UTC_NOW),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "campaign_id", "recipient_email", name="uq_email_logs_campaign_recipient"
        ),
    )

    op.create_index("ix_email_logs_campaign_id", "email_logs", ["campaign_id"])


def downgrade() -> None:
    op.drop_index("ix_email_logs_campaign_id")
    op.drop_table("email_logs")

    op.execute("DROP INDEX IF EXISTS ix_email_queue_processing_lease")
    op.execute("DROP INDEX IF EXISTS ix_email_queue_claim")
    op.drop_index("ix_email_queue_batch_id")
    op.drop_table("email_queue")

    op.execute("DROP TYPE IF EXISTS email_log_status")
    op.execute("DROP TYPE IF EXISTS email_type")
    op.execute("DROP TYPE IF EXISTS email_status")
