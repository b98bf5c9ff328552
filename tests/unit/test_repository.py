"""
Unit tests for the email queue repository.
"""

from datetime import timedelta
from typing import Any

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.constants import CampaignLogStatus, EmailStatus, EmailType
from mailqueue.db.models import EmailLog, EmailQueueEntry
from mailqueue.db.repository import EmailQueueRepository
from mailqueue.utils import new_batch_id, utcnow


def _entry(**overrides: Any) -> EmailQueueEntry:
    fields: dict[str, Any] = {
        "status": EmailStatus.PENDING,
        "email_type": EmailType.NOTIFICATION,
        "recipient_email": "reader@example.com",
        "subject": "Hello",
        "html_content": "<p>Hello</p>",
        "from_email": "noreply@example.com",
        "from_name": "Example",
        "priority": 0,
        "attempts": 0,
        "max_attempts": 3,
    }
    fields.update(overrides)
    return EmailQueueEntry(**fields)


class TestClaim:
    """Tests for claiming ready entries."""

    async def test_claim_marks_processing(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that a claim moves the entry to PROCESSING and stamps the lease."""
        [entry] = await repo.add_entries([_entry()])

        now = utcnow()
        claimed = await repo.claim_ready(batch_size=1, now=now)
        await db_session.commit()

        assert [e.id for e in claimed] == [entry.id]
        assert claimed[0].status == EmailStatus.PROCESSING
        assert claimed[0].last_attempt_at == now
        assert claimed[0].attempts == 0

    async def test_claim_orders_by_priority_then_age(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that higher priority wins and older entries go first within a priority."""
        base = utcnow() - timedelta(minutes=10)
        old_low = _entry(priority=0, created_at=base)
        new_low = _entry(priority=0, created_at=base + timedelta(minutes=1))
        high = _entry(priority=5, created_at=base + timedelta(minutes=2))
        await repo.add_entries([new_low, high, old_low])
        await db_session.commit()

        first = await repo.claim_ready(batch_size=2)
        await db_session.commit()
        second = await repo.claim_ready(batch_size=2)
        await db_session.commit()

        assert [e.id for e in first] == [high.id, old_low.id]
        assert [e.id for e in second] == [new_low.id]

    async def test_claim_respects_next_retry_at(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that entries scheduled for later are not claimed early."""
        later = utcnow() + timedelta(minutes=5)
        [entry] = await repo.add_entries([_entry(next_retry_at=later)])
        await db_session.commit()

        assert await repo.claim_ready() == []

        claimed = await repo.claim_ready(now=later)
        await db_session.commit()

        assert [e.id for e in claimed] == [entry.id]

    async def test_claim_skips_non_pending(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that processing and terminal entries are never claimed."""
        await repo.add_entries(
            [
                _entry(status=EmailStatus.PROCESSING, last_attempt_at=utcnow()),
                _entry(status=EmailStatus.SENT, attempts=1),
                _entry(status=EmailStatus.FAILED, attempts=3),
                _entry(status=EmailStatus.CANCELLED),
            ]
        )
        await db_session.commit()

        assert await repo.claim_ready(batch_size=10) == []

    async def test_claimed_entries_are_not_claimed_again(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that consecutive claims return disjoint sets."""
        await repo.add_entries([_entry(recipient_email=f"r{i}@example.com") for i in range(5)])
        await db_session.commit()

        seen: set[int] = set()
        for _ in range(5):
            claimed = await repo.claim_ready(batch_size=2)
            await db_session.commit()
            ids = {e.id for e in claimed}
            assert not ids & seen
            seen |= ids

        assert len(seen) == 5


class TestOutcomes:
    """Tests for lease-guarded outcome transitions."""

    async def _claim_one(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
        **overrides: Any,
    ) -> EmailQueueEntry:
        await repo.add_entries([_entry(**overrides)])
        await db_session.commit()
        [claimed] = await repo.claim_ready()
        await db_session.commit()
        return claimed

    async def test_mark_sent(self, repo: EmailQueueRepository, db_session: AsyncSession):
        """Test successful send bookkeeping."""
        claimed = await self._claim_one(repo, db_session)

        updated = await repo.mark_sent(claimed.id, claimed.last_attempt_at, "msg-1")
        await db_session.commit()

        assert updated is not None
        assert updated.status == EmailStatus.SENT
        assert updated.attempts == 1
        assert updated.provider_message_id == "msg-1"
        assert updated.sent_at is not None
        assert updated.error_message is None

    async def test_mark_sent_with_stale_token_is_ignored(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that a worker whose lease was taken over cannot record an outcome."""
        claimed = await self._claim_one(repo, db_session)
        stale_token = claimed.last_attempt_at - timedelta(seconds=1)

        assert await repo.mark_sent(claimed.id, stale_token, "msg-1") is None
        await db_session.commit()

        entry = await repo.get_entry(claimed.id)
        assert entry.status == EmailStatus.PROCESSING
        assert entry.attempts == 0

    async def test_schedule_retry(self, repo: EmailQueueRepository, db_session: AsyncSession):
        """Test that a retry returns the entry to PENDING with a delay."""
        claimed = await self._claim_one(repo, db_session)
        retry_at = utcnow() + timedelta(minutes=5)

        updated = await repo.schedule_retry(
            claimed.id,
            claimed.last_attempt_at,
            attempts=1,
            error="timeout",
            next_retry_at=retry_at,
        )
        await db_session.commit()

        assert updated.status == EmailStatus.PENDING
        assert updated.attempts == 1
        assert updated.error_message == "timeout"
        assert updated.next_retry_at == retry_at

    async def test_mark_failed(self, repo: EmailQueueRepository, db_session: AsyncSession):
        """Test terminal failure."""
        claimed = await self._claim_one(repo, db_session, attempts=2)

        updated = await repo.mark_failed(
            claimed.id,
            claimed.last_attempt_at,
            attempts=3,
            error="mailbox full",
        )
        await db_session.commit()

        assert updated.status == EmailStatus.FAILED
        assert updated.attempts == 3
        assert updated.error_message == "mailbox full"
        assert updated.next_retry_at is None


class TestLeaseRecovery:
    """Tests for returning abandoned claims to the queue."""

    async def test_recover_expired_leases(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that only claims older than the timeout are recovered."""
        now = utcnow()
        stale = _entry(
            status=EmailStatus.PROCESSING,
            last_attempt_at=now - timedelta(minutes=10),
        )
        fresh = _entry(
            status=EmailStatus.PROCESSING,
            last_attempt_at=now - timedelta(seconds=30),
        )
        await repo.add_entries([stale, fresh])
        await db_session.commit()

        count = await repo.recover_expired_leases(timedelta(minutes=5), now=now)
        await db_session.commit()

        assert count == 1
        recovered = await repo.get_entry(stale.id)
        assert recovered.status == EmailStatus.PENDING
        assert recovered.next_retry_at == now
        assert recovered.attempts == 0
        assert (await repo.get_entry(fresh.id)).status == EmailStatus.PROCESSING


class TestBatchOperations:
    """Tests for batch reporting, cancellation, retry and retention."""

    async def test_status_counts_include_every_status(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that statuses with no entries are reported as zero."""
        batch_id = new_batch_id()
        await repo.add_entries(
            [
                _entry(batch_id=batch_id),
                _entry(batch_id=batch_id, status=EmailStatus.SENT, attempts=1),
                _entry(status=EmailStatus.SENT, attempts=1),
            ]
        )
        await db_session.commit()

        counts = await repo.get_status_counts(batch_id)

        assert counts == {
            "pending": 1,
            "processing": 0,
            "sent": 1,
            "failed": 0,
            "cancelled": 0,
        }
        assert (await repo.get_status_counts())["sent"] == 2

    async def test_cancel_batch_only_touches_pending(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that in-flight and finished entries survive a cancel."""
        batch_id = new_batch_id()
        pending = _entry(batch_id=batch_id)
        in_flight = _entry(
            batch_id=batch_id,
            status=EmailStatus.PROCESSING,
            last_attempt_at=utcnow(),
        )
        sent = _entry(batch_id=batch_id, status=EmailStatus.SENT, attempts=1)
        other = _entry(batch_id=new_batch_id())
        await repo.add_entries([pending, in_flight, sent, other])
        await db_session.commit()

        count = await repo.cancel_batch(batch_id)
        await db_session.commit()

        assert count == 1
        assert (await repo.get_entry(pending.id)).status == EmailStatus.CANCELLED
        assert (await repo.get_entry(in_flight.id)).status == EmailStatus.PROCESSING
        assert (await repo.get_entry(sent.id)).status == EmailStatus.SENT
        assert (await repo.get_entry(other.id)).status == EmailStatus.PENDING

    async def test_retry_failed_in_batch(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that failed entries get a fresh attempt budget."""
        batch_id = new_batch_id()
        failed = _entry(
            batch_id=batch_id,
            status=EmailStatus.FAILED,
            attempts=3,
            error_message="bounced",
        )
        sent = _entry(batch_id=batch_id, status=EmailStatus.SENT, attempts=1)
        await repo.add_entries([failed, sent])
        await db_session.commit()

        count = await repo.retry_failed_in_batch(batch_id)
        await db_session.commit()

        assert count == 1
        retried = await repo.get_entry(failed.id)
        assert retried.status == EmailStatus.PENDING
        assert retried.attempts == 0
        assert retried.error_message is None
        assert retried.next_retry_at is None
        assert (await repo.get_entry(sent.id)).status == EmailStatus.SENT

    async def test_delete_expired_keeps_failed_and_recent(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that retention only removes old sent and cancelled entries."""
        old = utcnow() - timedelta(days=40)
        old_sent = _entry(status=EmailStatus.SENT, attempts=1, created_at=old)
        old_cancelled = _entry(status=EmailStatus.CANCELLED, created_at=old)
        old_failed = _entry(status=EmailStatus.FAILED, attempts=3, created_at=old)
        old_pending = _entry(created_at=old)
        new_sent = _entry(status=EmailStatus.SENT, attempts=1)
        await repo.add_entries([old_sent, old_cancelled, old_failed, old_pending, new_sent])
        await db_session.commit()

        deleted = await repo.delete_expired(utcnow() - timedelta(days=30))
        await db_session.commit()

        assert deleted == 2
        assert await repo.get_entry(old_sent.id) is None
        assert await repo.get_entry(old_cancelled.id) is None
        assert await repo.get_entry(old_failed.id) is not None
        assert await repo.get_entry(old_pending.id) is not None
        assert await repo.get_entry(new_sent.id) is not None


class TestCampaignLog:
    """Tests for the campaign log mirror."""

    async def test_upsert_overwrites_previous_outcome(
        self,
        repo: EmailQueueRepository,
        db_session: AsyncSession,
    ):
        """Test that one row is kept per campaign recipient."""
        await repo.upsert_campaign_log(
            campaign_id=7,
            recipient_email="reader@example.com",
            status=CampaignLogStatus.FAILED,
            error_message="bounced",
        )
        await db_session.commit()

        sent_at = utcnow()
        await repo.upsert_campaign_log(
            campaign_id=7,
            recipient_email="reader@example.com",
            status=CampaignLogStatus.SENT,
            provider_message_id="msg-9",
            sent_at=sent_at,
        )
        await db_session.commit()

        log = await repo.get_campaign_log(7, "reader@example.com")
        assert log.status == CampaignLogStatus.SENT
        assert log.provider_message_id == "msg-9"
        assert log.error_message is None
        assert log.sent_at == sent_at


class TestEntryModel:
    """Tests for model helpers."""

    def test_is_terminal(self):
        assert _entry(status=EmailStatus.SENT).is_terminal
        assert _entry(status=EmailStatus.FAILED).is_terminal
        assert _entry(status=EmailStatus.CANCELLED).is_terminal
        assert not _entry(status=EmailStatus.PENDING).is_terminal
        assert not _entry(status=EmailStatus.PROCESSING).is_terminal

    def test_is_retryable(self):
        assert _entry(attempts=2, max_attempts=3).is_retryable
        assert not _entry(attempts=3, max_attempts=3).is_retryable

    def test_timestamps_have_no_server_clock_default(self):
        """Test that timestamp columns are only stamped with naive UTC by the application."""
        for table in (EmailQueueEntry.__table__, EmailLog.__table__):
            for column in table.columns:
                if isinstance(column.type, DateTime):
                    assert column.server_default is None, column.name

    async def test_insert_stamps_naive_utc(
        self,
        repo: EmailQueueRepository,
    ):
        before = utcnow()
        [entry] = await repo.add_entries([_entry()])
        after = utcnow()

        assert entry.created_at.tzinfo is None
        assert before <= entry.created_at <= after
        assert before <= entry.updated_at <= after
