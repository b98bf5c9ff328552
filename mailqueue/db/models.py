"""
SQLAlchemy database models.
Defines the email queue table and the campaign log it mirrors outcomes into.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from mailqueue.constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    TERMINAL_STATUSES,
    CampaignLogStatus,
    EmailStatus,
    EmailType,
)
from mailqueue.utils import utcnow

JSON_TYPE = JSONB().with_variant(JSON(), "sqlite")
ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")


def _enum_values(enum_cls: type) -> list[str]:
    return [e.value for e in enum_cls]


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class EmailQueueEntry(Base):
    """
    One queued email send attempt-group.

    This table is the single source of truth for queue state. Every status
    transition goes through an atomic UPDATE on this table.

    Key constraints:
    - attempts never exceeds max_attempts
    - status = processing means exactly one worker holds the row, identified
      by the last_attempt_at value its claim wrote
    - batch_id is shared by rows inserted in one all-or-nothing batch
    """

    __tablename__ = "email_queue"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)

    status: Mapped[EmailStatus] = mapped_column(
        Enum(
            EmailStatus,
            name="email_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=EmailStatus.PENDING,
    )

    # Payload
    email_type: Mapped[EmailType] = mapped_column(
        Enum(
            EmailType,
            name="email_type",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    recipient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    html_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    text_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    template_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    template_data: Mapped[dict[str, Any] | None] = mapped_column(JSON_TYPE, nullable=True)
    from_email: Mapped[str] = mapped_column(String(255), nullable=False)
    from_name: Mapped[str] = mapped_column(String(255), nullable=False)

    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_PRIORITY)

    # Grouping and external references
    batch_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    campaign_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Timestamps (naive UTC)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint("max_attempts >= 1", name="ck_email_queue_max_attempts_positive"),
        CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts",
            name="ck_email_queue_attempts_bounded",
        ),
        Index("ix_email_queue_batch_id", "batch_id"),
        # Lease recovery scans processing rows by last_attempt_at
        Index(
            "ix_email_queue_processing_lease",
            "last_attempt_at",
            postgresql_where=text("status = 'processing'"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        """Check if no automatic transition can leave the current status."""
        return self.status in TERMINAL_STATUSES

    @property
    def is_retryable(self) -> bool:
        """Check if another attempt is allowed after a failure."""
        return self.attempts < self.max_attempts

    def __repr__(self) -> str:
        return (
            f"EmailQueueEntry(id={self.id}, to={self.recipient_email}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


# Claim query: status + readiness, then priority desc, created_at asc
Index(
    "ix_email_queue_claim",
    EmailQueueEntry.status,
    EmailQueueEntry.next_retry_at,
    EmailQueueEntry.priority.desc(),
    EmailQueueEntry.created_at.asc(),
)


class EmailLog(Base):
    """
    Per-campaign delivery log.

    The queue upserts one row per (campaign_id, recipient_email) when a
    campaign email reaches a terminal outcome.
    """

    __tablename__ = "email_logs"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(Integer, nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[CampaignLogStatus] = mapped_column(
        Enum(
            CampaignLogStatus,
            name="email_log_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        UniqueConstraint(
            "campaign_id", "recipient_email", name="uq_email_logs_campaign_recipient"
        ),
        Index("ix_email_logs_campaign_id", "campaign_id"),
    )

    def __repr__(self) -> str:
        return (
            f"EmailLog(campaign={self.campaign_id}, to={self.recipient_email}, "
            f"status={self.status})"
        )
