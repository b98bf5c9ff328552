"""
Integration tests for dispatcher processing against the queue store.
"""

import asyncio
from datetime import timedelta

from mailqueue.constants import EmailStatus
from mailqueue.db import get_session_context
from mailqueue.db.repository import EmailQueueRepository
from mailqueue.service import EmailQueueService
from mailqueue.sweeper import RetentionSweeper
from mailqueue.utils import utcnow
from mailqueue.worker import Dispatcher


def _dispatcher(provider, session_factory, worker_id: str = "test-worker", **overrides) -> Dispatcher:
    options = {"batch_size": 1, "send_delay": 0, "lease_timeout": 300}
    options.update(overrides)
    return Dispatcher(
        provider=provider,
        session_factory=session_factory,
        worker_id=worker_id,
        **options,
    )


async def _claim_at(session_factory, now):
    async with get_session_context(session_factory) as session:
        return await EmailQueueRepository(session).claim_ready(now=now)


class TestDispatchLifecycle:
    """End-to-end batch scenarios."""

    async def test_batch_completes_with_mixed_outcomes(
        self,
        service: EmailQueueService,
        session_factory,
        provider_factory,
        spec_factory,
    ):
        """Test a batch of three where one recipient bounces until its retries run out."""
        provider = provider_factory(fail_for={"bounce@example.com"})
        result = await service.enqueue_batch(
            [
                spec_factory(recipient_email="a@example.com"),
                spec_factory(recipient_email="bounce@example.com"),
                spec_factory(recipient_email="b@example.com"),
            ]
        )

        status = await service.batch_status(result.batch_id)
        assert status.total == 3
        assert status.pending == 3
        assert status.progress_percent == 0

        dispatcher = _dispatcher(provider, session_factory)

        for _ in range(3):
            assert await dispatcher.tick() == 1
        # The bounced entry is waiting out its backoff
        assert await dispatcher.tick() == 0

        status = await service.batch_status(result.batch_id)
        assert status.sent == 2
        assert status.pending == 1
        assert status.failed == 0
        assert status.progress_percent == 67

        [retry] = await _claim_at(session_factory, utcnow() + timedelta(minutes=6))
        assert retry.recipient_email == "bounce@example.com"
        assert retry.max_attempts == 3
        assert await dispatcher.process_job(retry) == EmailStatus.PENDING

        [retry] = await _claim_at(session_factory, utcnow() + timedelta(minutes=16))
        assert await dispatcher.process_job(retry) == EmailStatus.FAILED

        status = await service.batch_status(result.batch_id)
        assert status.sent == 2
        assert status.failed == 1
        assert status.pending == 0
        assert status.progress_percent == 100

        bounces = [call for call in provider.sent if call["to"] == "bounce@example.com"]
        assert len(bounces) == 3

    async def test_cancel_leaves_in_flight_entry_alone(
        self,
        service: EmailQueueService,
        session_factory,
        provider,
        spec_factory,
    ):
        """Test cancelling a batch while one entry is being sent."""
        result = await service.enqueue_batch([spec_factory() for _ in range(3)])
        dispatcher = _dispatcher(provider, session_factory)

        [in_flight] = await dispatcher.claim()
        assert await service.cancel_batch(result.batch_id) == 2

        assert await dispatcher.process_job(in_flight) == EmailStatus.SENT
        assert await dispatcher.tick() == 0

        status = await service.batch_status(result.batch_id)
        assert status.sent == 1
        assert status.cancelled == 2
        assert status.progress_percent == 33

    async def test_failed_batch_entries_can_be_retried(
        self,
        service: EmailQueueService,
        session_factory,
        provider_factory,
        spec_factory,
    ):
        """Test that a retried failed entry is sent on the next tick."""
        provider = provider_factory(outcomes=[ValueError("temporary outage")])
        result = await service.enqueue_batch([spec_factory(max_attempts=1)])
        dispatcher = _dispatcher(provider, session_factory)

        await dispatcher.tick()
        assert (await service.batch_status(result.batch_id)).failed == 1

        assert await service.retry_failed_in_batch(result.batch_id) == 1
        await dispatcher.tick()

        status = await service.batch_status(result.batch_id)
        assert status.sent == 1
        assert status.failed == 0


class TestConcurrentClaims:
    """Tests for exclusive claims across workers."""

    async def test_concurrent_claimers_never_share_entries(
        self,
        service: EmailQueueService,
        session_factory,
        spec_factory,
    ):
        """Test that parallel claim transactions partition the ready entries."""
        await service.enqueue_batch(
            [spec_factory(recipient_email=f"r{i}@example.com") for i in range(20)]
        )

        async def claim_all() -> list[int]:
            claimed: list[int] = []
            while True:
                async with get_session_context(session_factory) as session:
                    entries = await EmailQueueRepository(session).claim_ready(batch_size=3)
                if not entries:
                    return claimed
                claimed.extend(e.id for e in entries)

        results = await asyncio.gather(*(claim_all() for _ in range(4)))

        all_ids = [entry_id for ids in results for entry_id in ids]
        assert len(all_ids) == 20
        assert len(set(all_ids)) == 20

    async def test_parallel_dispatchers_send_each_email_once(
        self,
        service: EmailQueueService,
        session_factory,
        provider,
        spec_factory,
    ):
        await service.enqueue_batch(
            [spec_factory(recipient_email=f"r{i}@example.com") for i in range(6)]
        )
        dispatchers = [
            _dispatcher(provider, session_factory, worker_id=f"worker-{i}", batch_size=2)
            for i in range(3)
        ]

        for _ in range(3):
            await asyncio.gather(*(d.tick() for d in dispatchers))

        recipients = [call["to"] for call in provider.sent]
        assert sorted(recipients) == sorted(f"r{i}@example.com" for i in range(6))
        assert (await service.queue_stats()).sent == 6


class TestLeaseRecovery:
    """Tests for recovering entries from crashed workers."""

    async def test_abandoned_claim_is_sent_by_another_worker(
        self,
        service: EmailQueueService,
        session_factory,
        provider,
        spec_factory,
    ):
        entry_id = await service.enqueue(spec_factory())

        # A worker claims the entry and dies before sending
        async with get_session_context(session_factory) as session:
            await EmailQueueRepository(session).claim_ready(now=utcnow() - timedelta(minutes=6))

        survivor = _dispatcher(provider, session_factory, worker_id="survivor", lease_timeout=300)
        assert await survivor.tick() == 1

        async with get_session_context(session_factory) as session:
            entry = await EmailQueueRepository(session).get_entry(entry_id)
        assert entry.status == EmailStatus.SENT
        assert entry.attempts == 1
        assert len(provider.sent) == 1

    async def test_live_claim_is_not_recovered(
        self,
        service: EmailQueueService,
        session_factory,
        provider,
        spec_factory,
    ):
        await service.enqueue(spec_factory())
        owner = _dispatcher(provider, session_factory, worker_id="owner")
        await owner.claim()

        other = _dispatcher(provider, session_factory, worker_id="other")

        assert await other.tick() == 0
        assert provider.sent == []


class TestRetention:
    """Tests for the retention sweeper."""

    async def test_sweeper_removes_old_sent_entries(
        self,
        service: EmailQueueService,
        session_factory,
        provider,
        spec_factory,
    ):
        await service.enqueue_batch([spec_factory(), spec_factory()])
        dispatcher = _dispatcher(provider, session_factory, batch_size=2)
        await dispatcher.tick()

        assert await RetentionSweeper(service, days_to_keep=1).run_once() == 0
        assert await RetentionSweeper(service, days_to_keep=-1).run_once() == 2

        assert (await service.queue_stats()).total == 0
