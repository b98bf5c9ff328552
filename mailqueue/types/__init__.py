"""
Type definitions for the email queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from mailqueue.types.api import (
    AuthRequest,
    BatchCountResponse,
    BatchResult,
    BatchStatus,
    CleanupResponse,
    EnqueueBatchRequest,
    EnqueueEmailRequest,
    EnqueueEmailResponse,
    HealthResponse,
    QueueStats,
    TokenResponse,
)
from mailqueue.types.job import (
    ProviderMessage,
    QueuedEmailSpec,
)

__all__ = [
    # API types
    "EnqueueEmailRequest",
    "EnqueueEmailResponse",
    "EnqueueBatchRequest",
    "BatchResult",
    "BatchStatus",
    "BatchCountResponse",
    "QueueStats",
    "CleanupResponse",
    "TokenResponse",
    "AuthRequest",
    "HealthResponse",
    # Job types
    "QueuedEmailSpec",
    "ProviderMessage",
]
