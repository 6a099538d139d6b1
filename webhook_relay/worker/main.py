"""
Worker process for delivering webhooks.

The worker claims items from the dispatch queue, delivers them, and writes
the outcome back to the queue and the job store. The same process runs the
reconciler and the lease reaper.
"""

import asyncio
import logging
import os
import signal

import httpx

from webhook_relay.config import Settings, get_settings
from webhook_relay.constants import SPAN_DELIVER_WEBHOOK, JobStatus
from webhook_relay.db.connection import Database, init_db
from webhook_relay.db.models import StoreBase
from webhook_relay.db.retry import status_write_budget, write_job_status
from webhook_relay.dispatch.models import QueueBase
from webhook_relay.dispatch.queue import DispatchQueue
from webhook_relay.observability.logging import delivery_log_context, setup_logging
from webhook_relay.observability.metrics import get_metrics
from webhook_relay.observability.tracing import get_tracer, setup_tracing
from webhook_relay.recovery.reaper import Reaper
from webhook_relay.recovery.reconciler import Reconciler
from webhook_relay.types.job import DeliveryResult, FailureKind, WorkItem
from webhook_relay.worker.delivery import deliver_webhook

logger = logging.getLogger(__name__)


class DeliveryWorker:
    """
    Bounded pool of delivery slots sharing one HTTP client.

    Features:
    - Atomic claims against the dispatch queue, one item per slot
    - Heartbeat to extend leases while an attempt is in flight
    - Sleeps until the next retry timer fires when the queue is idle
    - Graceful shutdown: stop claiming, let in-flight attempts finish
    """

    def __init__(
        self,
        store: Database,
        queue: DispatchQueue,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        worker_id: str | None = None,
    ):
        """
        Initialize the worker.

        Args:
            store: The job store database.
            queue: The dispatch queue.
            settings: Worker and delivery configuration.
            http_client: Client used for deliveries. Created (and closed) by
                the worker if not given.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
        """
        self._store = store
        self._queue = queue
        self._settings = settings

        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.concurrency = settings.worker_concurrency
        self.poll_interval = settings.worker_poll_interval_seconds
        self.heartbeat_interval = settings.worker_heartbeat_interval_seconds
        self.shutdown_timeout = max(
            settings.shutdown_timeout_seconds, self.attempt_budget_seconds(settings)
        )

        self._client = http_client
        self._owns_client = http_client is None
        self._running = False
        self._stop_event = asyncio.Event()
        self._heartbeat_stop = asyncio.Event()
        self._in_flight: dict[int, WorkItem] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._metrics = get_metrics()

    @staticmethod
    def attempt_budget_seconds(settings: Settings) -> float:
        """
        Longest a claimed item can take: the delivery itself plus up to two
        job store writes, each with its own retries.
        """
        writes = 2 * status_write_budget(
            settings.status_write_retries, min_wait=settings.status_write_retry_wait_seconds
        )
        return settings.delivery_timeout_seconds + writes

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def start(self) -> None:
        """Run the delivery slots until stop() is called."""
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "concurrency": self.concurrency},
        )

        self._running = True
        self._stop_event.clear()
        self._heartbeat_stop.clear()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        slots = [asyncio.create_task(self._slot_loop(n)) for n in range(self.concurrency)]

        try:
            await self._stop_event.wait()

            # Wait for current deliveries to complete; leases keep renewing meanwhile
            _, pending = await asyncio.wait(slots, timeout=self.shutdown_timeout)
            if pending:
                logger.warning(
                    f"Abandoning {len(pending)} deliveries after {self.shutdown_timeout:g}s",
                    extra={"worker_id": self.worker_id},
                )
        finally:
            for task in slots:
                task.cancel()
            await asyncio.gather(*slots, return_exceptions=True)

            # Only once no slot can still be delivering
            self._heartbeat_stop.set()
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)

            if self._owns_client and self._client is not None:
                await self._client.aclose()
                self._client = None

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stop_event.set()

    async def _slot_loop(self, slot: int) -> None:
        while self._running:
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id, "slot": slot},
                )
                processed = False

            if not processed and self._running:
                await self._idle_wait()

    async def _idle_wait(self) -> None:
        """Sleep until the poll interval passes, a retry comes due, or stop()."""
        timeout = self.poll_interval
        try:
            due_in = await self._queue.seconds_until_next_eligible()
        except Exception as e:
            logger.warning(f"Could not read retry timers: {e}")
            due_in = None
        if due_in is not None:
            timeout = min(timeout, due_in)

        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> bool:
        """
        Claim and process a single item.

        Returns:
            True if an item was processed, False if nothing was eligible.
        """
        item = await self._queue.claim(self.worker_id)
        if item is None:
            return False

        await self.process(item)
        return True

    async def process(self, item: WorkItem) -> None:
        """
        Make one delivery attempt for a claimed item and record the outcome.

        Args:
            item: The claimed work item.
        """
        self._in_flight[item.item_id] = item

        try:
            with delivery_log_context(item):
                await self._attempt(item)
        finally:
            self._in_flight.pop(item.item_id, None)

    async def _attempt(self, item: WorkItem) -> None:
        with get_tracer().start_as_current_span(SPAN_DELIVER_WEBHOOK) as span:
            span.set_attribute("job_id", item.job_id)
            span.set_attribute("attempt", item.attempt_number)

            try:
                result = await deliver_webhook(
                    self.client,
                    item,
                    secret=self._settings.webhook_secret.get_secret_value(),
                    timeout_seconds=self._settings.delivery_timeout_seconds,
                )
            except Exception as e:
                logger.exception("Exception delivering webhook")
                result = DeliveryResult(success=False, error=f"Worker exception: {e}")

            span.set_attribute("success", result.success)
            if result.status_code is not None:
                span.set_attribute("http.status_code", result.status_code)

        self._metrics.record_delivery_attempt(
            success=result.success,
            duration_seconds=(result.duration_ms or 0.0) / 1000,
        )

        if result.success:
            await self._handle_success(item, result)
        else:
            await self._handle_failure(item, result)

    async def _handle_success(self, item: WorkItem, result: DeliveryResult) -> None:
        # Store first: once the item is completed nothing would retry the write
        await write_job_status(
            self._store,
            lambda repo: repo.mark_delivered(item.job_id, item.attempt_number),
            attempts=self._settings.status_write_retries,
            description="mark_delivered",
            job_id=item.job_id,
            min_wait=self._settings.status_write_retry_wait_seconds,
        )
        await self._queue.complete(item.item_id, self.worker_id)

        logger.info(
            f"Delivered on attempt {item.attempt_number}",
            extra={"status_code": result.status_code, "duration_ms": result.duration_ms},
        )
        self._metrics.record_job_finished(JobStatus.DELIVERED.value)

    async def _handle_failure(self, item: WorkItem, result: DeliveryResult) -> None:
        error = result.error or "Unknown error"
        logger.warning(
            f"Attempt {item.attempt_number} failed",
            extra={"error": error, "status_code": result.status_code},
        )

        # The store counts the attempt before the queue does, so a reconciler
        # pass in between never sees fewer attempts than were made
        await write_job_status(
            self._store,
            lambda repo: repo.record_attempt_error(item.job_id, item.attempt_number, error),
            attempts=self._settings.status_write_retries,
            description="record_attempt_error",
            job_id=item.job_id,
            min_wait=self._settings.status_write_retry_wait_seconds,
        )

        outcome = await self._queue.fail(item.item_id, self.worker_id, error)

        if outcome.kind == FailureKind.PERMANENTLY_FAILED:
            await write_job_status(
                self._store,
                lambda repo: repo.mark_failed(item.job_id, outcome.attempts_made, error),
                attempts=self._settings.status_write_retries,
                description="mark_failed",
                job_id=item.job_id,
                min_wait=self._settings.status_write_retry_wait_seconds,
            )
            self._metrics.record_job_finished(JobStatus.FAILED.value)
        elif outcome.kind == FailureKind.LOST_LEASE:
            logger.warning("Lost lease before recording failure; the reaper owns the item now")

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on in-flight items.

        This prevents items from being reclaimed by the reaper
        while a slow receiver is still answering. It outlives stop() and
        ends only after every slot has returned.
        """
        while not self._heartbeat_stop.is_set():
            try:
                await asyncio.wait_for(self._heartbeat_stop.wait(), timeout=self.heartbeat_interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                for item_id in list(self._in_flight):
                    extended = await self._queue.extend_lease(item_id, self.worker_id)
                    if extended:
                        logger.debug("Extended lease", extra={"item_id": item_id})
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")


async def run_async() -> None:
    """Run the worker, the reconciler and the reaper in one process."""
    settings = get_settings()
    setup_logging(settings, "worker")
    setup_tracing(settings)

    store = await init_db(settings.database_url, "store", StoreBase.metadata, settings)
    queue_db = await init_db(settings.queue_database_url, "queue", QueueBase.metadata, settings)
    queue = DispatchQueue(queue_db, settings)

    worker = DeliveryWorker(store, queue, settings)
    reconciler = Reconciler(store, queue, settings)
    reaper = Reaper(store, queue, settings)

    background = [
        asyncio.create_task(reconciler.start()),
        asyncio.create_task(reaper.start()),
    ]

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.start()
    finally:
        await reconciler.stop()
        await reaper.stop()
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        await queue_db.close()
        await store.close()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
