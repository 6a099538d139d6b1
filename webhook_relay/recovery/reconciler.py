"""
Reconciler for pending jobs that have no dispatch item.

A job can be durable in the store while the queue never heard of it: the
process died between insert and enqueue, or the queue database was down.
The reconciler re-enqueues every pending job with a recovery dedupe key;
jobs that still have a live item absorb the enqueue, so running it any
number of times never produces a second live item.

A recovered item starts from the job's recorded attempt_count, so losing the
queue never hands a job a fresh attempt budget. A pending job that has
already used every attempt is failed instead of re-enqueued.
"""

import asyncio
import logging
from datetime import timedelta

from webhook_relay.config import Settings
from webhook_relay.constants import RECOVERY_DEDUPE_PREFIX, SPAN_RECONCILE, JobStatus
from webhook_relay.db.connection import Database
from webhook_relay.db.models import WebhookJob, utcnow
from webhook_relay.db.repository import JobRepository
from webhook_relay.db.retry import write_job_status
from webhook_relay.dispatch.queue import DispatchQueue
from webhook_relay.observability.metrics import get_metrics
from webhook_relay.observability.tracing import get_tracer
from webhook_relay.types.job import ReconcileReport

logger = logging.getLogger(__name__)

EXHAUSTED_ERROR = "attempt limit reached"


def recovery_dedupe_key(job_id: int) -> str:
    return f"{RECOVERY_DEDUPE_PREFIX}{job_id}"


class Reconciler:
    """
    Re-enqueues pending jobs.

    Runs once at startup over every pending job, then every
    reconcile_interval_seconds over pending jobs older than
    reconcile_grace_seconds, which leaves fresh submissions to the
    normal enqueue path.
    """

    def __init__(self, store: Database, queue: DispatchQueue, settings: Settings):
        self._store = store
        self._queue = queue
        self._settings = settings
        self.interval = settings.reconcile_interval_seconds
        self.grace_seconds = settings.reconcile_grace_seconds
        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Run the startup pass, then reconcile periodically until stopped."""
        logger.info(
            f"Reconciler starting with interval {self.interval}s",
            extra={"grace_seconds": self.grace_seconds},
        )
        self._running = True

        grace: int | None = None
        while self._running:
            try:
                await self.run_once(grace_seconds=grace)
            except Exception as e:
                logger.exception(f"Error in reconciler loop: {e}")

            grace = self.grace_seconds
            await asyncio.sleep(self.interval)

        logger.info("Reconciler stopped")

    async def stop(self) -> None:
        """Stop the reconciler."""
        logger.info("Reconciler stopping")
        self._running = False

    async def run_once(self, grace_seconds: int | None = None) -> ReconcileReport:
        """
        Re-enqueue pending jobs, oldest first.

        Args:
            grace_seconds: Skip jobs created within this many seconds.
                None or 0 scans every pending job.

        Returns:
            ReconcileReport with the jobs that got a new item and the ones
            whose enqueue was absorbed.
        """
        threshold = utcnow() - timedelta(seconds=grace_seconds) if grace_seconds else None

        async with self._store.session() as session:
            jobs = await JobRepository(session).list_pending_older_than(threshold)

        report = ReconcileReport(scanned=len(jobs))

        with get_tracer().start_as_current_span(SPAN_RECONCILE) as span:
            span.set_attribute("pending_jobs", len(jobs))

            for job in jobs:
                if self._queue.policy.is_exhausted(job.attempt_count):
                    await self._fail_exhausted(job, report)
                    continue

                # The new item only gets the attempts the job has left
                item_id = await self._queue.enqueue(
                    job_id=job.id,
                    payload=job.payload,
                    target_url=job.target_url,
                    dedupe_key=recovery_dedupe_key(job.id),
                    attempts_made=job.attempt_count,
                )
                if item_id is None:
                    report.absorbed.append(job.id)
                else:
                    report.requeued.append(job.id)

            span.set_attribute("requeued", len(report.requeued))
            span.set_attribute("failed", len(report.failed))

        self._metrics.record_reconciled(len(report.requeued))

        if report.requeued:
            logger.info(
                f"Recovering {len(report.requeued)} pending jobs",
                extra={"job_ids": report.requeued},
            )
        return report

    async def _fail_exhausted(self, job: WebhookJob, report: ReconcileReport) -> None:
        """Close out a pending job that has already used every attempt."""
        if await self._queue.has_live_item(job.id):
            # Its last attempt is still being recorded
            report.absorbed.append(job.id)
            return

        applied = await write_job_status(
            self._store,
            lambda repo: repo.mark_failed(
                job.id, job.attempt_count, job.last_error or EXHAUSTED_ERROR
            ),
            attempts=self._settings.status_write_retries,
            description="mark_failed",
            job_id=job.id,
            min_wait=self._settings.status_write_retry_wait_seconds,
        )
        if applied:
            report.failed.append(job.id)
            self._metrics.record_job_finished(JobStatus.FAILED.value)
            logger.warning(
                f"Job #{job.id} already used {job.attempt_count} attempts; marked failed",
                extra={"job_id": job.id},
            )
