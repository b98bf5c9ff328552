"""
Email queue repository for database operations.
Implements the core data access patterns for the dispatch queue.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.constants import SWEEPABLE_STATUSES, CampaignLogStatus, EmailStatus
from mailqueue.db.models import EmailLog, EmailQueueEntry
from mailqueue.utils import utcnow

logger = logging.getLogger(__name__)


class EmailQueueRepository:
    """
    Repository for email queue database operations.

    Implements atomic operations for:
    - Single and batch inserts
    - Claiming ready entries with FOR UPDATE SKIP LOCKED
    - Outcome transitions guarded by the claim's lease token
    - Lease recovery for crashed workers
    - Batch reporting, cancellation, retry and retention
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def add_entries(self, entries: Sequence[EmailQueueEntry]) -> Sequence[EmailQueueEntry]:
        """
        Stage new entries and flush them so ids are assigned.

        The caller owns the transaction; nothing is durable until it commits.

        Args:
            entries: Unsaved queue entries.

        Returns:
            The same entries with ids populated.
        """
        self._session.add_all(entries)
        await self._session.flush()
        return entries

    async def count_batch(self, batch_id: str) -> int:
        """Count entries that belong to a batch."""
        stmt = (
            select(func.count())
            .select_from(EmailQueueEntry)
            .where(EmailQueueEntry.batch_id == batch_id)
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def get_entry(self, entry_id: int) -> EmailQueueEntry | None:
        """
        Get an entry by ID, always reloading its current column values.

        Args:
            entry_id: The entry id.

        Returns:
            The entry or None if not found.
        """
        stmt = (
            select(EmailQueueEntry)
            .where(EmailQueueEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def recover_expired_leases(
        self,
        lease_timeout: timedelta,
        now: datetime | None = None,
    ) -> int:
        """
        Return abandoned PROCESSING entries to PENDING.

        An entry whose last_attempt_at is older than the lease timeout is
        presumed to belong to a worker that died mid-send. Running this from
        several processes at once is harmless.

        Args:
            lease_timeout: How long a claim stays valid.
            now: Reference time, defaults to the current time.

        Returns:
            Number of recovered entries.
        """
        now = now or utcnow()
        cutoff = now - lease_timeout

        stmt = (
            update(EmailQueueEntry)
            .where(
                and_(
                    EmailQueueEntry.status == EmailStatus.PROCESSING,
                    EmailQueueEntry.last_attempt_at < cutoff,
                )
            )
            .values(
                status=EmailStatus.PENDING,
                next_retry_at=now,
                updated_at=now,
            )
            .returning(EmailQueueEntry.id)
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        recovered = [row.id for row in result.all()]

        if recovered:
            logger.warning(
                f"Recovered {len(recovered)} entries with expired leases",
                extra={"entry_ids": recovered},
            )

        return len(recovered)

    async def claim_ready(
        self,
        batch_size: int = 1,
        now: datetime | None = None,
    ) -> list[EmailQueueEntry]:
        """
        Claim ready entries using FOR UPDATE SKIP LOCKED.

        This is the only path from PENDING to PROCESSING. Concurrent claimers
        skip rows another transaction has locked instead of waiting, so each
        row is won by exactly one claim. The caller must commit before doing
        any network work.

        Args:
            batch_size: Maximum number of entries to claim.
            now: Reference time, defaults to the current time. It is written
                to last_attempt_at and acts as the lease token.

        Returns:
            Claimed entries ordered by priority desc, created_at asc.
        """
        now = now or utcnow()

        candidates = (
            select(EmailQueueEntry.id)
            .where(
                and_(
                    EmailQueueEntry.status == EmailStatus.PENDING,
                    or_(
                        EmailQueueEntry.next_retry_at.is_(None),
                        EmailQueueEntry.next_retry_at <= now,
                    ),
                )
            )
            .order_by(
                EmailQueueEntry.priority.desc(),
                EmailQueueEntry.created_at.asc(),
                EmailQueueEntry.id.asc(),
            )
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )

        stmt = (
            update(EmailQueueEntry)
            .where(EmailQueueEntry.id.in_(candidates.scalar_subquery()))
            .values(
                status=EmailStatus.PROCESSING,
                last_attempt_at=now,
                updated_at=now,
            )
            .returning(EmailQueueEntry)
            .execution_options(synchronize_session="fetch")
        )

        result = await self._session.execute(stmt)
        entries = list(result.scalars().all())

        # RETURNING does not preserve the subquery's ORDER BY
        entries.sort(key=lambda e: (-e.priority, e.created_at, e.id))

        if entries:
            logger.info(
                f"Claimed {len(entries)} entries",
                extra={"entry_ids": [e.id for e in entries]},
            )

        return entries

    def _owned_by(self, entry_id: int, lease_token: datetime):
        return and_(
            EmailQueueEntry.id == entry_id,
            EmailQueueEntry.status == EmailStatus.PROCESSING,
            EmailQueueEntry.last_attempt_at == lease_token,
        )

    async def mark_sent(
        self,
        entry_id: int,
        lease_token: datetime,
        provider_message_id: str | None,
        now: datetime | None = None,
    ) -> EmailQueueEntry | None:
        """
        Transition a claimed entry to SENT.

        Args:
            entry_id: The entry id.
            lease_token: last_attempt_at written by the claim.
            provider_message_id: Id assigned by the provider.
            now: Reference time.

        Returns:
            Updated entry, or None if the lease was lost.
        """
        now = now or utcnow()
        stmt = (
            update(EmailQueueEntry)
            .where(self._owned_by(entry_id, lease_token))
            .values(
                status=EmailStatus.SENT,
                sent_at=now,
                provider_message_id=provider_message_id,
                attempts=EmailQueueEntry.attempts + 1,
                error_message=None,
                next_retry_at=None,
                updated_at=now,
            )
            .returning(EmailQueueEntry)
            .execution_options(synchronize_session="fetch")
        )

        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_failed(
        self,
        entry_id: int,
        lease_token: datetime,
        attempts: int,
        error: str,
        now: datetime | None = None,
    ) -> EmailQueueEntry | None:
        """
        Transition a claimed entry to terminal FAILED.

        Args:
            entry_id: The entry id.
            lease_token: last_attempt_at written by the claim.
            attempts: Attempt count including the one that just failed.
            error: Failure reason.
            now: Reference time.

        Returns:
            Updated entry, or None if the lease was lost.
        """
        now = now or utcnow()
        stmt = (
            update(EmailQueueEntry)
            .where(self._owned_by(entry_id, lease_token))
            .values(
                status=EmailStatus.FAILED,
                attempts=attempts,
                error_message=error,
                next_retry_at=None,
                updated_at=now,
            )
            .returning(EmailQueueEntry)
            .execution_options(synchronize_session="fetch")
        )

        result = await self._session.execute(stmt)
        entry = result.scalar_one_or_none()

        if entry:
            logger.warning(
                f"Entry failed permanently after {attempts} attempts",
                extra={"entry_id": entry_id, "error": error},
            )

        return entry

    async def schedule_retry(
        self,
        entry_id: int,
        lease_token: datetime,
        attempts: int,
        error: str,
        next_retry_at: datetime,
        now: datetime | None = None,
    ) -> EmailQueueEntry | None:
        """
        Return a claimed entry to PENDING with a backoff delay.

        Args:
            entry_id: The entry id.
            lease_token: last_attempt_at written by the claim.
            attempts: Attempt count including the one that just failed.
            error: Failure reason.
            next_retry_at: Earliest time the entry may be claimed again.
            now: Reference time.

        Returns:
            Updated entry, or None if the lease was lost.
        """
        now = now or utcnow()
        stmt = (
            update(EmailQueueEntry)
            .where(self._owned_by(entry_id, lease_token))
            .values(
                status=EmailStatus.PENDING,
                attempts=attempts,
                error_message=error,
                next_retry_at=next_retry_at,
                updated_at=now,
            )
            .returning(EmailQueueEntry)
            .execution_options(synchronize_session="fetch")
        )

        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_campaign_log(
        self,
        campaign_id: int,
        recipient_email: str,
        status: CampaignLogStatus,
        provider_message_id: str | None = None,
        error_message: str | None = None,
        sent_at: datetime | None = None,
    ) -> None:
        """
        Mirror a terminal outcome into the campaign log.

        One row is kept per (campaign_id, recipient_email); a later outcome
        overwrites an earlier one.
        """
        values: dict[str, Any] = {
            "campaign_id": campaign_id,
            "recipient_email": recipient_email,
            "status": status,
            "provider_message_id": provider_message_id,
            "error_message": error_message,
            "sent_at": sent_at,
        }
        changes = {
            key: values[key]
            for key in ("status", "provider_message_id", "error_message", "sent_at")
        }

        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(EmailLog).values(**values)
        elif dialect == "sqlite":
            stmt = sqlite_insert(EmailLog).values(**values)
        else:
            await self._upsert_campaign_log_generic(values, changes)
            return

        stmt = stmt.on_conflict_do_update(
            index_elements=["campaign_id", "recipient_email"],
            set_=changes,
        )
        await self._session.execute(stmt)

    async def _upsert_campaign_log_generic(
        self,
        values: dict[str, Any],
        changes: dict[str, Any],
    ) -> None:
        stmt = select(EmailLog).where(
            and_(
                EmailLog.campaign_id == values["campaign_id"],
                EmailLog.recipient_email == values["recipient_email"],
            )
        )
        existing = (await self._session.execute(stmt)).scalar_one_or_none()
        if existing is None:
            self._session.add(EmailLog(**values))
        else:
            for key, value in changes.items():
                setattr(existing, key, value)
        await self._session.flush()

    async def get_campaign_log(
        self,
        campaign_id: int,
        recipient_email: str,
    ) -> EmailLog | None:
        """Get the campaign log row for a recipient."""
        stmt = (
            select(EmailLog)
            .where(
                and_(
                    EmailLog.campaign_id == campaign_id,
                    EmailLog.recipient_email == recipient_email,
                )
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_status_counts(self, batch_id: str | None = None) -> dict[str, int]:
        """
        Get entry counts by status.

        Args:
            batch_id: Optional batch filter.

        Returns:
            Dictionary of status -> count, with every status present.
        """
        stmt = select(EmailQueueEntry.status, func.count()).group_by(EmailQueueEntry.status)
        if batch_id is not None:
            stmt = stmt.where(EmailQueueEntry.batch_id == batch_id)

        result = await self._session.execute(stmt)
        counts = {status.value: 0 for status in EmailStatus}
        for status, count in result.all():
            counts[EmailStatus(status).value] = count
        return counts

    async def get_queue_depth(self) -> int:
        """Get the number of entries waiting to be claimed."""
        stmt = (
            select(func.count())
            .select_from(EmailQueueEntry)
            .where(EmailQueueEntry.status == EmailStatus.PENDING)
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def cancel_batch(self, batch_id: str, now: datetime | None = None) -> int:
        """
        Cancel the entries of a batch that have not been claimed yet.

        Entries already PROCESSING, SENT or FAILED are left alone.

        Returns:
            Number of cancelled entries.
        """
        now = now or utcnow()
        stmt = (
            update(EmailQueueEntry)
            .where(
                and_(
                    EmailQueueEntry.batch_id == batch_id,
                    EmailQueueEntry.status == EmailStatus.PENDING,
                )
            )
            .values(status=EmailStatus.CANCELLED, updated_at=now)
            .returning(EmailQueueEntry.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = len(result.all())

        if count > 0:
            logger.info(
                f"Cancelled {count} pending entries",
                extra={"batch_id": batch_id},
            )

        return count

    async def retry_failed_in_batch(self, batch_id: str, now: datetime | None = None) -> int:
        """
        Reset FAILED entries of a batch so they are sent again.

        Returns:
            Number of reset entries.
        """
        now = now or utcnow()
        stmt = (
            update(EmailQueueEntry)
            .where(
                and_(
                    EmailQueueEntry.batch_id == batch_id,
                    EmailQueueEntry.status == EmailStatus.FAILED,
                )
            )
            .values(
                status=EmailStatus.PENDING,
                attempts=0,
                error_message=None,
                next_retry_at=None,
                updated_at=now,
            )
            .returning(EmailQueueEntry.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = len(result.all())

        if count > 0:
            logger.info(
                f"Reset {count} failed entries for retry",
                extra={"batch_id": batch_id},
            )

        return count

    async def delete_expired(self, cutoff: datetime) -> int:
        """
        Delete SENT and CANCELLED entries created before the cutoff.

        Returns:
            Number of deleted entries.
        """
        stmt = (
            delete(EmailQueueEntry)
            .where(
                and_(
                    EmailQueueEntry.status.in_(SWEEPABLE_STATUSES),
                    EmailQueueEntry.created_at < cutoff,
                )
            )
            .returning(EmailQueueEntry.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return len(result.all())
