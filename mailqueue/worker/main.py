"""
Dispatcher process for sending queued emails.

Each tick recovers abandoned claims, claims a bounded number of ready
entries, and sends them one at a time with a fixed delay between sends to
respect the provider's rate limit.
"""

import asyncio
import logging
import os
import signal
import time
from collections.abc import Sequence
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailqueue.config import get_settings
from mailqueue.constants import (
    SPAN_CLAIM,
    SPAN_SEND_EMAIL,
    CampaignLogStatus,
    EmailStatus,
)
from mailqueue.db import close_db, get_engine, get_session_context, init_db
from mailqueue.db.models import EmailQueueEntry
from mailqueue.db.repository import EmailQueueRepository
from mailqueue.observability.logging import bind_context, setup_logging, unbind_context
from mailqueue.observability.metrics import get_metrics
from mailqueue.observability.tracing import (
    get_tracer,
    instrument_sqlalchemy,
    set_span_attributes,
    setup_tracing,
    shutdown_tracing,
)
from mailqueue.provider import NotisendClient, ProviderClient
from mailqueue.types.job import ProviderMessage
from mailqueue.utils import utcnow

logger = logging.getLogger(__name__)


def retry_delay_minutes(
    attempts: int,
    delays: Sequence[int],
    fallback: int,
) -> int:
    """
    Backoff for the retry that follows a failed attempt.

    Args:
        attempts: Attempts made so far, including the one that just failed.
        delays: Minutes to wait after the 1st, 2nd, ... failure.
        fallback: Minutes to wait once the table is exhausted.
    """
    index = attempts - 1
    if 0 <= index < len(delays):
        return delays[index]
    return fallback


class Dispatcher:
    """
    Email dispatcher that polls the queue and sends claimed entries.

    Features:
    - Lease recovery for entries abandoned by crashed workers
    - Atomic claims using FOR UPDATE SKIP LOCKED
    - Sequential sends with a fixed inter-send delay
    - Retry with backoff and a deterministic terminal failure

    Each instance owns its own schedule, so several dispatchers can run in
    one process (for example in tests).
    """

    def __init__(
        self,
        provider: ProviderClient,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        worker_id: str | None = None,
        batch_size: int | None = None,
        send_delay: float | None = None,
        lease_timeout: float | None = None,
        retry_delays: Sequence[int] | None = None,
        retry_fallback: int | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            provider: Client used to send emails.
            session_factory: Session factory. Defaults to the process-wide one.
            worker_id: Worker identifier for logs and metrics. Defaults to hostname + PID.
            batch_size: Maximum entries claimed per tick.
            send_delay: Seconds to wait after each send.
            lease_timeout: Seconds after which a PROCESSING entry is presumed abandoned.
            retry_delays: Backoff table in minutes, indexed by attempt.
            retry_fallback: Backoff in minutes beyond the table.
        """
        settings = get_settings()

        self.provider = provider
        self.worker_id = (
            worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        )
        self.batch_size = batch_size if batch_size is not None else settings.worker_batch_size
        self.send_delay = (
            send_delay if send_delay is not None else settings.worker_send_delay_seconds
        )
        self.lease_timeout = timedelta(
            seconds=(
                lease_timeout
                if lease_timeout is not None
                else settings.worker_lease_timeout_seconds
            )
        )
        self.retry_delays = tuple(
            retry_delays if retry_delays is not None else settings.retry_delays_minutes
        )
        self.retry_fallback = (
            retry_fallback if retry_fallback is not None else settings.retry_fallback_minutes
        )
        self.default_interval = settings.worker_interval_seconds

        self._session_factory = session_factory
        self._schedule_task: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()
        self._tick_in_progress = False
        self._metrics = get_metrics()

    @property
    def is_running(self) -> bool:
        """Check if the recurring schedule is active."""
        return self._schedule_task is not None and not self._schedule_task.done()

    def start(self, interval_seconds: float | None = None) -> None:
        """
        Start ticking: once immediately, then every interval.

        Calling start() on a running dispatcher does nothing. Must be called
        from inside a running event loop.

        Args:
            interval_seconds: Seconds between ticks.
        """
        if self.is_running:
            logger.info("Dispatcher already running", extra={"worker_id": self.worker_id})
            return

        interval = interval_seconds if interval_seconds is not None else self.default_interval

        logger.info(
            "Dispatcher starting",
            extra={
                "worker_id": self.worker_id,
                "interval_seconds": interval,
                "batch_size": self.batch_size,
                "send_delay_seconds": self.send_delay,
            },
        )
        self._schedule_task = asyncio.create_task(self._schedule_loop(interval))

    async def stop(self) -> None:
        """
        Stop the recurring schedule.

        A tick that is already running is allowed to finish; this waits for it.
        """
        if self._schedule_task is not None:
            self._schedule_task.cancel()
            try:
                await self._schedule_task
            except asyncio.CancelledError:
                pass
            self._schedule_task = None
            logger.info("Dispatcher stopping", extra={"worker_id": self.worker_id})

        if self._ticks:
            logger.info(f"Waiting for {len(self._ticks)} ticks to complete")
            await asyncio.gather(*self._ticks, return_exceptions=True)

        logger.info("Dispatcher stopped", extra={"worker_id": self.worker_id})

    async def _schedule_loop(self, interval: float) -> None:
        while True:
            task = asyncio.create_task(self.tick())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
            await asyncio.sleep(interval)

    async def tick(self) -> int:
        """
        Run one dispatch pass.

        Skips immediately if this dispatcher's previous tick is still running.
        That check only saves work; exclusivity comes from the claim.

        Returns:
            Number of entries processed.
        """
        if self._tick_in_progress:
            logger.debug("Previous tick still running, skipping", extra={"worker_id": self.worker_id})
            return 0

        self._tick_in_progress = True
        try:
            await self.recover_expired_leases()

            entries = await self.claim()
            if not entries:
                return 0

            logger.info(
                f"Processing {len(entries)} emails",
                extra={"worker_id": self.worker_id},
            )

            for entry in entries:
                await self.process_job(entry)
                if self.send_delay > 0:
                    await asyncio.sleep(self.send_delay)

            return len(entries)

        except Exception as e:
            logger.exception(
                f"Error in dispatcher tick: {e}",
                extra={"worker_id": self.worker_id},
            )
            return 0

        finally:
            self._tick_in_progress = False

    async def recover_expired_leases(self) -> int:
        """
        Return abandoned PROCESSING entries to PENDING.

        Returns:
            Number of entries recovered.
        """
        async with get_session_context(self._session_factory) as session:
            count = await EmailQueueRepository(session).recover_expired_leases(
                self.lease_timeout
            )

        if count > 0:
            self._metrics.record_leases_recovered(count)

        return count

    async def claim(self) -> list[EmailQueueEntry]:
        """
        Claim ready entries and commit before any send.

        Returns:
            The claimed entries.
        """
        with get_tracer().start_as_current_span(SPAN_CLAIM) as span:
            span.set_attribute("worker_id", self.worker_id)
            async with get_session_context(self._session_factory) as session:
                entries = await EmailQueueRepository(session).claim_ready(self.batch_size)
            span.set_attribute("claimed", len(entries))

        if entries:
            self._metrics.record_claimed(self.worker_id, len(entries))

        return entries

    async def process_job(self, entry: EmailQueueEntry) -> EmailStatus | None:
        """
        Send one claimed entry and record the outcome.

        Never raises. Provider failures become a retry or a terminal failure;
        a store failure while recording the outcome leaves the entry
        PROCESSING for lease recovery.

        Args:
            entry: An entry returned by claim().

        Returns:
            The status the entry moved to, or None if nothing was recorded.
        """
        bind_context(entry_id=entry.id, batch_id=entry.batch_id)
        start_time = time.monotonic()
        try:
            try:
                with get_tracer().start_as_current_span(SPAN_SEND_EMAIL) as span:
                    set_span_attributes(
                        span,
                        entry_id=entry.id,
                        batch_id=entry.batch_id,
                        attempt=entry.attempts + 1,
                        template_id=entry.template_id,
                    )
                    message = await self._send(entry)
            except Exception as e:
                return await self._record_failure(entry, str(e) or type(e).__name__, start_time)

            return await self._record_success(entry, message, start_time)

        except Exception:
            logger.exception(
                "Failed to record send outcome; lease recovery will retry",
                extra={"entry_id": entry.id},
            )
            return None

        finally:
            unbind_context("entry_id", "batch_id")

    async def _send(self, entry: EmailQueueEntry) -> ProviderMessage:
        if entry.template_id:
            return await self.provider.send_template(
                entry.recipient_email,
                entry.template_id,
                entry.template_data or {},
                entry.subject,
            )
        return await self.provider.send(
            entry.recipient_email,
            entry.subject,
            html=entry.html_content,
            text=entry.text_content,
            from_email=entry.from_email,
            from_name=entry.from_name,
        )

    async def _record_success(
        self,
        entry: EmailQueueEntry,
        message: ProviderMessage,
        start_time: float,
    ) -> EmailStatus | None:
        now = utcnow()
        async with get_session_context(self._session_factory) as session:
            repo = EmailQueueRepository(session)
            updated = await repo.mark_sent(
                entry.id,
                lease_token=entry.last_attempt_at,
                provider_message_id=message.id,
                now=now,
            )
            if updated is None:
                logger.warning(
                    "Lease lost before recording sent email",
                    extra={"entry_id": entry.id},
                )
                return None

            if entry.campaign_id is not None:
                await repo.upsert_campaign_log(
                    campaign_id=entry.campaign_id,
                    recipient_email=entry.recipient_email,
                    status=CampaignLogStatus.SENT,
                    provider_message_id=message.id,
                    sent_at=now,
                )

        self._metrics.record_processed("sent", time.monotonic() - start_time)
        logger.info(
            "Email sent",
            extra={"entry_id": entry.id, "provider_message_id": message.id},
        )
        return EmailStatus.SENT

    async def _record_failure(
        self,
        entry: EmailQueueEntry,
        error: str,
        start_time: float,
    ) -> EmailStatus | None:
        attempts = entry.attempts + 1
        now = utcnow()

        async with get_session_context(self._session_factory) as session:
            repo = EmailQueueRepository(session)

            if attempts >= entry.max_attempts:
                updated = await repo.mark_failed(
                    entry.id,
                    lease_token=entry.last_attempt_at,
                    attempts=entry.max_attempts,
                    error=error,
                    now=now,
                )
                status = EmailStatus.FAILED
                if updated is not None and entry.campaign_id is not None:
                    await repo.upsert_campaign_log(
                        campaign_id=entry.campaign_id,
                        recipient_email=entry.recipient_email,
                        status=CampaignLogStatus.FAILED,
                        error_message=error,
                    )
            else:
                delay = retry_delay_minutes(attempts, self.retry_delays, self.retry_fallback)
                updated = await repo.schedule_retry(
                    entry.id,
                    lease_token=entry.last_attempt_at,
                    attempts=attempts,
                    error=error,
                    next_retry_at=now + timedelta(minutes=delay),
                    now=now,
                )
                status = EmailStatus.PENDING
                if updated is not None:
                    logger.info(
                        f"Retry scheduled in {delay} min",
                        extra={"entry_id": entry.id, "attempt": attempts, "error": error},
                    )

        if updated is None:
            logger.warning(
                "Lease lost before recording failed send",
                extra={"entry_id": entry.id, "error": error},
            )
            return None

        outcome = "failed" if status == EmailStatus.FAILED else "retry"
        self._metrics.record_processed(outcome, time.monotonic() - start_time)
        return status


async def run_async() -> None:
    """Run the dispatcher until SIGTERM or SIGINT."""
    setup_logging()
    setup_tracing()
    await init_db()
    instrument_sqlalchemy(get_engine().sync_engine)

    dispatcher = Dispatcher(provider=NotisendClient())
    stopped = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stopped.set)

    dispatcher.start()
    try:
        await stopped.wait()
    finally:
        await dispatcher.stop()
        await close_db()
        shutdown_tracing()


def run() -> None:
    """Run the dispatcher."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
