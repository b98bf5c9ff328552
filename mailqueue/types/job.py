"""
Queue-related type definitions for internal use.
"""

from typing import Any

from pydantic import BaseModel

from mailqueue.constants import EmailType


class QueuedEmailSpec(BaseModel):
    """
    Producer-side description of one email to queue.

    Only field types are checked here. Range and content validation belong to
    the caller; the store enforces its own constraints at insert time.
    """

    email_type: EmailType
    recipient_email: str
    recipient_name: str | None = None
    subject: str
    html_content: str | None = None
    text_content: str | None = None
    template_id: str | None = None
    template_data: dict[str, Any] | None = None
    from_email: str | None = None
    from_name: str | None = None
    priority: int | None = None
    max_attempts: int | None = None
    campaign_id: int | None = None
    user_id: int | None = None


class ProviderMessage(BaseModel):
    """Provider acknowledgement of an accepted message."""

    id: str | None = None
