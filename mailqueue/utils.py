"""Small shared helpers."""

import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form stored in the queue."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_batch_id() -> str:
    """Create a UUID4-based batch identifier."""
    return str(uuid.uuid4())
