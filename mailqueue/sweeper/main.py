"""
Retention sweeper for old queue entries.

Deletes SENT and CANCELLED entries older than the retention window. It is
meant to be run from cron, once per invocation. FAILED entries are kept so
they can still be inspected and retried.
"""

import asyncio
import logging

from mailqueue.db import close_db, init_db
from mailqueue.observability.logging import setup_logging
from mailqueue.observability.metrics import get_metrics
from mailqueue.service import EmailQueueService

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """
    Retention sweeper that deletes expired terminal entries.

    Each run:
    1. Computes the cutoff from days_to_keep
    2. Deletes SENT and CANCELLED entries created before it
    3. Records metrics for monitoring
    """

    def __init__(
        self,
        service: EmailQueueService | None = None,
        days_to_keep: int | None = None,
    ):
        """
        Initialize the sweeper.

        Args:
            service: Queue service to delete through.
            days_to_keep: Retention window in days. Defaults to settings.
        """
        self.service = service or EmailQueueService()
        self.days_to_keep = days_to_keep
        self._metrics = get_metrics()

    async def run_once(self) -> int:
        """
        Run one retention pass.

        Returns:
            Number of entries deleted.
        """
        deleted = await self.service.cleanup(self.days_to_keep)

        if deleted > 0:
            self._metrics.record_swept(deleted)
        else:
            logger.info("Nothing to sweep")

        return deleted


async def run_async() -> None:
    """Run the sweeper once."""
    setup_logging()
    await init_db()

    try:
        await RetentionSweeper().run_once()
    finally:
        await close_db()


def run() -> None:
    """Run the sweeper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
