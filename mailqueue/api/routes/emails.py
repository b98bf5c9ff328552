"""
Email queue routes.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from mailqueue.api.auth import CurrentOperator
from mailqueue.config import get_settings
from mailqueue.constants import API_V1_PREFIX
from mailqueue.exceptions import StorageError
from mailqueue.service import EmailQueueService
from mailqueue.types.api import (
    BatchCountResponse,
    BatchResult,
    BatchStatus,
    CleanupResponse,
    EnqueueBatchRequest,
    EnqueueEmailRequest,
    EnqueueEmailResponse,
    QueueStats,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/emails", tags=["Emails"])


def get_queue_service() -> EmailQueueService:
    """Dependency providing the queue service bound to the process-wide database."""
    return EmailQueueService()


def _unavailable(e: StorageError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(e),
    )


@router.post(
    "",
    response_model=EnqueueEmailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Queue an email",
    description="Durably queue a single email for delivery.",
)
async def enqueue_email(
    request: EnqueueEmailRequest,
    operator: CurrentOperator,
    service: EmailQueueService = Depends(get_queue_service),
) -> EnqueueEmailResponse:
    """
    Queue one email.

    Raises:
        HTTPException: 503 if the queue store is unavailable.
    """
    try:
        entry_id = await service.enqueue(request.to_spec())
    except StorageError as e:
        raise _unavailable(e) from e

    return EnqueueEmailResponse(id=entry_id)


@router.post(
    "/batches",
    response_model=BatchResult,
    status_code=status.HTTP_201_CREATED,
    summary="Queue a batch",
    description="Queue many emails under one batch id. Either all are queued or none.",
)
async def enqueue_batch(
    request: EnqueueBatchRequest,
    operator: CurrentOperator,
    service: EmailQueueService = Depends(get_queue_service),
) -> BatchResult:
    """
    Queue a batch of emails atomically.

    Raises:
        HTTPException: 503 if the batch could not be stored.
    """
    try:
        result = await service.enqueue_batch([email.to_spec() for email in request.emails])
    except StorageError as e:
        raise _unavailable(e) from e

    logger.info(
        "Batch queued via API",
        extra={"batch_id": result.batch_id, "operator": operator.operator},
    )
    return result


@router.get(
    "/stats",
    response_model=QueueStats,
    summary="Queue statistics",
    description="Count queue entries by status.",
)
async def get_queue_stats(
    operator: CurrentOperator,
    service: EmailQueueService = Depends(get_queue_service),
) -> QueueStats:
    """Get global queue statistics."""
    try:
        return await service.queue_stats()
    except StorageError as e:
        raise _unavailable(e) from e


@router.get(
    "/batches/{batch_id}",
    response_model=BatchStatus,
    summary="Batch progress",
    description="Count the entries of one batch by status.",
)
async def get_batch_status(
    batch_id: str,
    operator: CurrentOperator,
    service: EmailQueueService = Depends(get_queue_service),
) -> BatchStatus:
    """
    Get the progress of a batch.

    Raises:
        HTTPException: 404 if the batch has no entries.
    """
    try:
        batch = await service.batch_status(batch_id)
    except StorageError as e:
        raise _unavailable(e) from e

    if batch.total == 0:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Batch not found",
        )
    return batch


@router.post(
    "/batches/{batch_id}/cancel",
    response_model=BatchCountResponse,
    summary="Cancel a batch",
    description="Cancel the entries of a batch that have not been claimed yet.",
)
async def cancel_batch(
    batch_id: str,
    operator: CurrentOperator,
    service: EmailQueueService = Depends(get_queue_service),
) -> BatchCountResponse:
    """Cancel pending entries of a batch."""
    try:
        count = await service.cancel_batch(batch_id)
    except StorageError as e:
        raise _unavailable(e) from e

    logger.info(
        f"Cancelled {count} emails",
        extra={"batch_id": batch_id, "operator": operator.operator},
    )
    return BatchCountResponse(batch_id=batch_id, count=count)


@router.post(
    "/batches/{batch_id}/retry",
    response_model=BatchCountResponse,
    summary="Retry failed emails",
    description="Requeue the failed entries of a batch with a fresh attempt budget.",
)
async def retry_batch(
    batch_id: str,
    operator: CurrentOperator,
    service: EmailQueueService = Depends(get_queue_service),
) -> BatchCountResponse:
    """Requeue failed entries of a batch."""
    try:
        count = await service.retry_failed_in_batch(batch_id)
    except StorageError as e:
        raise _unavailable(e) from e

    logger.info(
        f"Requeued {count} failed emails",
        extra={"batch_id": batch_id, "operator": operator.operator},
    )
    return BatchCountResponse(batch_id=batch_id, count=count)


@router.post(
    "/cleanup",
    response_model=CleanupResponse,
    summary="Apply retention",
    description="Delete sent and cancelled entries older than the retention window.",
)
async def cleanup(
    operator: CurrentOperator,
    days_to_keep: int | None = Query(default=None, ge=0),
    service: EmailQueueService = Depends(get_queue_service),
) -> CleanupResponse:
    """Delete old terminal entries."""
    if days_to_keep is None:
        days_to_keep = get_settings().retention_days

    try:
        count = await service.cleanup(days_to_keep)
    except StorageError as e:
        raise _unavailable(e) from e

    return CleanupResponse(days_to_keep=days_to_keep, count=count)
