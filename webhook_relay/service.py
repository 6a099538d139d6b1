"""
Event submission.

Writes the job to the store first and only then hands it to the dispatch
queue. A crash or queue outage between the two leaves a pending job that the
reconciler picks up later; a store failure is surfaced to the caller.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from webhook_relay.config import Settings
from webhook_relay.constants import IDEMPOTENCY_KEY_PREFIX, SPAN_SUBMIT_EVENT
from webhook_relay.db.connection import Database
from webhook_relay.db.repository import DUPLICATE, JobRepository
from webhook_relay.dispatch.queue import DispatchQueue
from webhook_relay.errors import StoreUnavailableError
from webhook_relay.observability.metrics import get_metrics
from webhook_relay.observability.tracing import get_tracer
from webhook_relay.types.job import EventPayload

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    """Outcome of a submission: a new job, or a duplicate rejection."""

    created: bool
    job_id: int | None = None
    enqueued: bool = False


def derive_idempotency_key(transaction_id: str) -> str:
    """Idempotency key for a business transaction."""
    return f"{IDEMPOTENCY_KEY_PREFIX}{transaction_id}"


class SubmissionService:
    """Accepts payment events and turns them into durable webhook jobs."""

    def __init__(self, store: Database, queue: DispatchQueue, settings: Settings):
        self._store = store
        self._queue = queue
        self._settings = settings
        self._metrics = get_metrics()

    async def submit(
        self,
        merchant_id: str,
        amount: float | int,
        currency: str,
        transaction_id: str,
        idempotency_key: str | None = None,
    ) -> SubmissionResult:
        """
        Create a job for an event and enqueue it.

        Args:
            merchant_id: Destination merchant.
            amount: Transaction amount.
            currency: Currency code.
            transaction_id: Business transaction id.
            idempotency_key: Overrides the key derived from transaction_id.

        Returns:
            SubmissionResult; created is False for a duplicate.

        Raises:
            StoreUnavailableError: The job could not be written.
        """
        payload = EventPayload(
            merchantId=merchant_id,
            amount=amount,
            currency=currency,
            transactionId=transaction_id,
        ).model_dump()
        key = idempotency_key or derive_idempotency_key(transaction_id)
        target_url = self._settings.target_url

        with get_tracer().start_as_current_span(SPAN_SUBMIT_EVENT) as span:
            span.set_attribute("merchant_id", merchant_id)
            span.set_attribute("idempotency_key", key)

            try:
                async with self._store.session() as session:
                    job_id = await JobRepository(session).create_job(
                        merchant_id=merchant_id,
                        payload=payload,
                        target_url=target_url,
                        idempotency_key=key,
                    )
            except (SQLAlchemyError, OSError) as e:
                logger.error(
                    "Failed to ingest event",
                    extra={"transaction_id": transaction_id, "error": str(e)},
                )
                raise StoreUnavailableError(str(e)) from e

            if job_id is DUPLICATE:
                self._metrics.record_event_duplicate()
                return SubmissionResult(created=False)

            span.set_attribute("job_id", job_id)
            self._metrics.record_event_submitted(merchant_id)

            enqueued = False
            try:
                enqueued = await self._queue.enqueue(job_id, payload, target_url) is not None
            except (SQLAlchemyError, OSError) as e:
                # The job is durable; the reconciler will enqueue it
                logger.warning(
                    f"Queue unavailable; saved job #{job_id} but could not enqueue",
                    extra={"job_id": job_id, "error": str(e)},
                )

        logger.info(
            f"Event received | job #{job_id}",
            extra={
                "job_id": job_id,
                "merchant_id": merchant_id,
                "transaction_id": transaction_id,
                "enqueued": enqueued,
            },
        )
        return SubmissionResult(created=True, job_id=job_id, enqueued=enqueued)
