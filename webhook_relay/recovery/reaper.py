"""
Lease reaper for recovering stalled dispatch items.

The reaper runs periodically to find active items whose lease expired
(the owning worker crashed or hung) and returns them to the queue. Items
that stalled too often are failed, and their jobs are failed in the store.
"""

import asyncio
import logging

from webhook_relay.config import Settings
from webhook_relay.constants import JobStatus
from webhook_relay.db.connection import Database
from webhook_relay.db.retry import write_job_status
from webhook_relay.dispatch.queue import DispatchQueue
from webhook_relay.observability.metrics import get_metrics
from webhook_relay.types.job import StalledFailure, StalledRecovery

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper.

    Runs periodically to:
    1. Find active items with an expired lease
    2. Return them to waiting, or fail them past max_stalled_count
    3. Propagate those failures to the job store
    4. Refresh queue metrics
    """

    def __init__(self, store: Database, queue: DispatchQueue, settings: Settings):
        self._store = store
        self._queue = queue
        self._settings = settings
        self.interval = settings.reaper_interval_seconds
        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def run_once(self) -> StalledRecovery:
        """
        Run the reaper once.

        Returns:
            The items requeued and failed by this pass.
        """
        recovery = await self._queue.recover_stalled()

        for failure in recovery.failed:
            await self._fail_job(failure)

        self._metrics.record_stalled(len(recovery.requeued), len(recovery.failed))
        self._metrics.update_queue_depth(await self._queue.get_depth())
        return recovery

    async def _fail_job(self, failure: StalledFailure) -> None:
        applied = await write_job_status(
            self._store,
            lambda repo: repo.mark_failed(failure.job_id, failure.attempts_made, failure.error),
            attempts=self._settings.status_write_retries,
            description="mark_failed",
            job_id=failure.job_id,
            min_wait=self._settings.status_write_retry_wait_seconds,
        )
        if applied:
            self._metrics.record_job_finished(JobStatus.FAILED.value)
