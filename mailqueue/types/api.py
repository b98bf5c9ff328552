"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from mailqueue.constants import EmailStatus, EmailType
from mailqueue.types.job import QueuedEmailSpec


class EnqueueEmailRequest(BaseModel):
    """Request body for queueing a single email."""

    email_type: EmailType
    recipient_email: str = Field(..., min_length=3, max_length=255)
    recipient_name: str | None = Field(default=None, max_length=255)
    subject: str = Field(..., min_length=1, max_length=500)
    html_content: str | None = None
    text_content: str | None = None
    template_id: str | None = Field(default=None, max_length=255)
    template_data: dict[str, Any] | None = None
    from_email: str | None = Field(default=None, max_length=255)
    from_name: str | None = Field(default=None, max_length=255)
    priority: int | None = Field(default=None, description="Higher values are sent first")
    max_attempts: int | None = Field(
        default=None, ge=1, le=10, description="Maximum send attempts"
    )
    campaign_id: int | None = None
    user_id: int | None = None

    def to_spec(self) -> QueuedEmailSpec:
        """Convert the validated request into a queue spec."""
        return QueuedEmailSpec(**self.model_dump())


class EnqueueEmailResponse(BaseModel):
    """Response body after queueing an email."""

    id: int
    status: EmailStatus = EmailStatus.PENDING
    message: str = "Email queued"


class EnqueueBatchRequest(BaseModel):
    """Request body for queueing a batch of emails atomically."""

    emails: list[EnqueueEmailRequest] = Field(..., max_length=10000)


class BatchResult(BaseModel):
    """Outcome of an atomic batch insert."""

    batch_id: str
    total: int
    queued: int
    message: str


class QueueStats(BaseModel):
    """Global snapshot of queue entries by status."""

    pending: int = 0
    processing: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0


class BatchStatus(BaseModel):
    """Progress of a single batch."""

    batch_id: str
    total: int = 0
    pending: int = 0
    processing: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    progress_percent: int = 0


class BatchCountResponse(BaseModel):
    """Number of entries affected by a batch operation."""

    batch_id: str
    count: int


class CleanupResponse(BaseModel):
    """Number of entries removed by the retention sweep."""

    days_to_keep: int
    count: int


class AuthRequest(BaseModel):
    """Authentication request."""

    api_key: str = Field(..., description="Admin API key")
    operator: str = Field(..., description="Operator identifier recorded in tokens")


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime
