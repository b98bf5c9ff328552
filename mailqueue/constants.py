"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class EmailStatus(StrEnum):
    """
    Queue entry lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (claimed by a worker)
    - PROCESSING -> SENT (provider accepted the message)
    - PROCESSING -> PENDING (retry scheduled, or lease expired)
    - PROCESSING -> FAILED (max attempts reached)
    - PENDING -> CANCELLED (batch cancelled before claim)
    - FAILED -> PENDING (bulk retry of a batch)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EmailType(StrEnum):
    """Kinds of email the platform puts on the queue."""

    INITIAL_PASSWORD = "initial_password"
    CAMPAIGN = "campaign"
    CREDENTIAL = "credential"
    NOTIFICATION = "notification"


class CampaignLogStatus(StrEnum):
    """Outcome mirrored into the campaign log."""

    SENT = "sent"
    FAILED = "failed"


TERMINAL_STATUSES: frozenset[EmailStatus] = frozenset(
    {EmailStatus.SENT, EmailStatus.FAILED, EmailStatus.CANCELLED}
)

# Statuses the retention sweeper may delete. FAILED is kept for inspection.
SWEEPABLE_STATUSES: tuple[EmailStatus, ...] = (EmailStatus.SENT, EmailStatus.CANCELLED)

# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PRIORITY = 0
DEFAULT_LEASE_TIMEOUT_SECONDS = 300
DEFAULT_RETRY_DELAYS_MINUTES: tuple[int, ...] = (5, 15, 30)
DEFAULT_RETRY_FALLBACK_MINUTES = 15
DEFAULT_TEMPLATE_SUBJECT = "Notification"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "email_queue_depth"
METRIC_EMAILS_ENQUEUED = "emails_enqueued_total"
METRIC_EMAILS_PROCESSED = "emails_processed_total"
METRIC_SEND_DURATION = "email_send_duration_seconds"
METRIC_EMAILS_CLAIMED = "emails_claimed_total"
METRIC_LEASE_RECOVERED = "email_leases_recovered_total"
METRIC_EMAILS_SWEPT = "emails_swept_total"
METRIC_API_REQUESTS = "api_requests_total"

# Trace span names
SPAN_ENQUEUE = "enqueue_email"
SPAN_ENQUEUE_BATCH = "enqueue_email_batch"
SPAN_CLAIM = "claim_emails"
SPAN_SEND_EMAIL = "send_email"
