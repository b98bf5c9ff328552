"""
Producer-facing queue operations.

EmailQueueService is what the rest of the platform talks to: it enqueues
single emails and atomic batches, reports progress, cancels and retries
batches, and applies retention. Sending is the dispatcher's job.
"""

import logging
import math
from collections import Counter
from datetime import timedelta
from typing import Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailqueue.config import get_settings
from mailqueue.constants import (
    DEFAULT_PRIORITY,
    SPAN_ENQUEUE,
    SPAN_ENQUEUE_BATCH,
    EmailStatus,
)
from mailqueue.db import get_session_context
from mailqueue.db.models import EmailQueueEntry
from mailqueue.db.repository import EmailQueueRepository
from mailqueue.exceptions import StorageError
from mailqueue.observability.metrics import get_metrics
from mailqueue.observability.tracing import get_tracer, set_span_attributes
from mailqueue.types.api import BatchResult, BatchStatus, QueueStats
from mailqueue.types.job import QueuedEmailSpec
from mailqueue.utils import new_batch_id, utcnow

logger = logging.getLogger(__name__)


def progress_percent(completed: int, total: int) -> int:
    """Share of finished entries, rounded half up. Zero for an empty batch."""
    if total <= 0:
        return 0
    return math.floor(100 * completed / total + 0.5)


class EmailQueueService:
    """
    Enqueuer, batch reporter and retention entry point.

    Every call opens its own short transaction. Storage failures are raised
    to the caller as StorageError.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        """
        Initialize the service.

        Args:
            session_factory: Session factory to use. Defaults to the
                process-wide one set up by init_db().
        """
        self._session_factory = session_factory
        self._settings = get_settings()
        self._metrics = get_metrics()

    def _build_entry(self, spec: QueuedEmailSpec, batch_id: str | None = None) -> EmailQueueEntry:
        return EmailQueueEntry(
            status=EmailStatus.PENDING,
            email_type=spec.email_type,
            recipient_email=spec.recipient_email,
            recipient_name=spec.recipient_name,
            subject=spec.subject,
            html_content=spec.html_content,
            text_content=spec.text_content,
            template_id=spec.template_id,
            template_data=spec.template_data,
            from_email=spec.from_email or self._settings.default_from_email,
            from_name=spec.from_name or self._settings.default_from_name,
            priority=DEFAULT_PRIORITY if spec.priority is None else spec.priority,
            max_attempts=(
                self._settings.default_max_attempts
                if spec.max_attempts is None
                else spec.max_attempts
            ),
            attempts=0,
            batch_id=batch_id,
            campaign_id=spec.campaign_id,
            user_id=spec.user_id,
        )

    async def enqueue(self, spec: QueuedEmailSpec) -> int:
        """
        Durably queue one email.

        Args:
            spec: The email to send.

        Returns:
            The id of the new queue entry.

        Raises:
            StorageError: If the insert fails.
        """
        with get_tracer().start_as_current_span(SPAN_ENQUEUE) as span:
            set_span_attributes(
                span,
                email_type=spec.email_type.value,
                campaign_id=spec.campaign_id,
            )
            try:
                async with get_session_context(self._session_factory) as session:
                    repo = EmailQueueRepository(session)
                    [entry] = await repo.add_entries([self._build_entry(spec)])
                    entry_id = entry.id
            except SQLAlchemyError as e:
                logger.exception(
                    "Failed to enqueue email",
                    extra={"recipient": spec.recipient_email},
                )
                raise StorageError(f"Failed to enqueue email: {e}") from e

        self._metrics.record_enqueued(spec.email_type.value)
        logger.info(
            "Email queued",
            extra={"entry_id": entry_id, "email_type": spec.email_type.value},
        )
        return entry_id

    async def enqueue_batch(self, specs: Sequence[QueuedEmailSpec]) -> BatchResult:
        """
        Queue a batch of emails in a single transaction.

        Either every entry is persisted under one fresh batch_id or none is.
        The queued count is read back from the store after commit.

        Args:
            specs: The emails to send.

        Returns:
            BatchResult with the batch id and intended and durable counts.

        Raises:
            StorageError: If any insert fails; the whole batch is rolled back.
        """
        batch_id = new_batch_id()

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_BATCH) as span:
            set_span_attributes(span, batch_id=batch_id, batch_size=len(specs))
            try:
                async with get_session_context(self._session_factory) as session:
                    repo = EmailQueueRepository(session)
                    await repo.add_entries(
                        [self._build_entry(spec, batch_id) for spec in specs]
                    )

                async with get_session_context(self._session_factory) as session:
                    queued = await EmailQueueRepository(session).count_batch(batch_id)
            except SQLAlchemyError as e:
                logger.exception(
                    "Batch enqueue rolled back",
                    extra={"batch_id": batch_id, "total": len(specs)},
                )
                raise StorageError(f"Failed to enqueue batch: {e}") from e

        for email_type, count in Counter(spec.email_type.value for spec in specs).items():
            self._metrics.record_enqueued(email_type, count)

        logger.info(
            f"{queued} emails queued",
            extra={"batch_id": batch_id, "total": len(specs), "queued": queued},
        )

        return BatchResult(
            batch_id=batch_id,
            total=len(specs),
            queued=queued,
            message=f"{queued} emails queued",
        )

    async def queue_stats(self) -> QueueStats:
        """Get a global snapshot of entry counts by status."""
        try:
            async with get_session_context(self._session_factory) as session:
                counts = await EmailQueueRepository(session).get_status_counts()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read queue stats: {e}") from e

        self._metrics.update_queue_depth(counts[EmailStatus.PENDING.value])
        return QueueStats(**counts, total=sum(counts.values()))

    async def batch_status(self, batch_id: str) -> BatchStatus:
        """
        Get the progress of a batch.

        progress_percent counts SENT and FAILED entries as finished.
        """
        try:
            async with get_session_context(self._session_factory) as session:
                counts = await EmailQueueRepository(session).get_status_counts(batch_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read batch status: {e}") from e

        total = sum(counts.values())
        completed = counts[EmailStatus.SENT.value] + counts[EmailStatus.FAILED.value]

        return BatchStatus(
            batch_id=batch_id,
            total=total,
            progress_percent=progress_percent(completed, total),
            **counts,
        )

    async def cancel_batch(self, batch_id: str) -> int:
        """Cancel the entries of a batch that are still PENDING."""
        try:
            async with get_session_context(self._session_factory) as session:
                return await EmailQueueRepository(session).cancel_batch(batch_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to cancel batch: {e}") from e

    async def retry_failed_in_batch(self, batch_id: str) -> int:
        """Reset the FAILED entries of a batch to PENDING with a fresh attempt budget."""
        try:
            async with get_session_context(self._session_factory) as session:
                return await EmailQueueRepository(session).retry_failed_in_batch(batch_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to retry batch: {e}") from e

    async def cleanup(self, days_to_keep: int | None = None) -> int:
        """
        Delete SENT and CANCELLED entries older than the retention window.

        FAILED entries are never deleted here.

        Args:
            days_to_keep: Retention window in days. Defaults to settings.

        Returns:
            Number of deleted entries.
        """
        if days_to_keep is None:
            days_to_keep = self._settings.retention_days

        cutoff = utcnow() - timedelta(days=days_to_keep)
        try:
            async with get_session_context(self._session_factory) as session:
                deleted = await EmailQueueRepository(session).delete_expired(cutoff)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to clean up queue: {e}") from e

        if deleted > 0:
            logger.info(
                f"Deleted {deleted} old queue entries",
                extra={"days_to_keep": days_to_keep},
            )
        return deleted
