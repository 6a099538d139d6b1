"""
Job repository for job store operations.
Implements the durable state machine for submitted webhook jobs.
"""

import enum
import logging
from datetime import datetime
from typing import Literal, Sequence

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_relay.constants import JobStatus
from webhook_relay.db.models import WebhookJob, utcnow
from webhook_relay.types.job import StatusSummary

logger = logging.getLogger(__name__)


class Duplicate(enum.Enum):
    """Signal returned when an idempotency key has already been used."""

    DUPLICATE = "duplicate"


DUPLICATE = Duplicate.DUPLICATE


def _at_least(attempts: int):
    # attempt_count never moves backwards
    return case(
        (WebhookJob.attempt_count > attempts, WebhookJob.attempt_count),
        else_=attempts,
    )


class JobRepository:
    """
    Repository for job store operations.

    Every mutation is a single conditional statement keyed by job id, so the
    database is the only serialization point:
    - creation is an insert that ignores idempotency key conflicts
    - terminal transitions only apply to jobs that are still pending
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    def _insert(self):
        if self._session.bind.dialect.name == "postgresql":
            return pg_insert(WebhookJob)
        return sqlite_insert(WebhookJob)

    async def create_job(
        self,
        merchant_id: str,
        payload: dict,
        target_url: str,
        idempotency_key: str,
    ) -> int | Literal[Duplicate.DUPLICATE]:
        """
        Create a new pending job unless the idempotency key is taken.

        Uses INSERT ... ON CONFLICT DO NOTHING so concurrent duplicate
        submissions resolve to a single row.

        Args:
            merchant_id: Destination merchant.
            payload: The immutable event document.
            target_url: Delivery destination.
            idempotency_key: Unique key for the business transaction.

        Returns:
            The new job id, or DUPLICATE if the key already exists.
        """
        now = utcnow()
        stmt = (
            self._insert()
            .values(
                merchant_id=merchant_id,
                payload=payload,
                target_url=target_url,
                idempotency_key=idempotency_key,
                status=JobStatus.PENDING,
                attempt_count=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
            .returning(WebhookJob.id)
        )

        result = await self._session.execute(stmt)
        job_id = result.scalar_one_or_none()

        if job_id is None:
            logger.info(
                "Duplicate submission rejected",
                extra={"idempotency_key": idempotency_key, "merchant_id": merchant_id},
            )
            return DUPLICATE

        logger.info(
            "Created new job",
            extra={"job_id": job_id, "merchant_id": merchant_id},
        )
        return job_id

    async def get_job(self, job_id: int) -> WebhookJob | None:
        """
        Get a job by ID.

        Args:
            job_id: The job id.

        Returns:
            The WebhookJob or None if not found.
        """
        stmt = select(WebhookJob).where(WebhookJob.id == job_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_delivered(self, job_id: int, attempt_number: int) -> bool:
        """
        Mark a job as delivered.

        Repeating the call with the same or a higher attempt number is a no-op
        success, which absorbs redundant redeliveries.

        Args:
            job_id: The job id.
            attempt_number: The attempt that the receiver accepted.

        Returns:
            True if the job is delivered after the call.
        """
        stmt = (
            update(WebhookJob)
            .where(
                and_(
                    WebhookJob.id == job_id,
                    or_(
                        WebhookJob.status == JobStatus.PENDING,
                        and_(
                            WebhookJob.status == JobStatus.DELIVERED,
                            WebhookJob.attempt_count <= attempt_number,
                        ),
                    ),
                )
            )
            .values(
                status=JobStatus.DELIVERED,
                attempt_count=_at_least(attempt_number),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        if result.rowcount > 0:
            logger.info(
                "Job marked delivered",
                extra={"job_id": job_id, "attempt": attempt_number},
            )
            return True

        job = await self.get_job(job_id)
        if job is not None and job.status == JobStatus.DELIVERED:
            return True

        logger.warning(
            "Could not mark job delivered",
            extra={
                "job_id": job_id,
                "attempt": attempt_number,
                "status": job.status.value if job else None,
            },
        )
        return False

    async def mark_failed(self, job_id: int, attempts_made: int, error: str) -> bool:
        """
        Mark a pending job as permanently failed.

        Args:
            job_id: The job id.
            attempts_made: Total attempts made.
            error: Description of the last failure.

        Returns:
            True if the transition was applied.
        """
        stmt = (
            update(WebhookJob)
            .where(
                and_(
                    WebhookJob.id == job_id,
                    WebhookJob.status == JobStatus.PENDING,
                )
            )
            .values(
                status=JobStatus.FAILED,
                attempt_count=_at_least(attempts_made),
                last_error=error,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        applied = result.rowcount > 0

        if applied:
            logger.warning(
                f"Job failed permanently after {attempts_made} attempts",
                extra={"job_id": job_id, "error": error},
            )
        return applied

    async def record_attempt_error(self, job_id: int, attempt_number: int, error: str) -> bool:
        """
        Record an intermediate failed attempt on a job that stays pending.

        attempt_count never moves backwards.

        Returns:
            True if the row was updated.
        """
        stmt = (
            update(WebhookJob)
            .where(
                and_(
                    WebhookJob.id == job_id,
                    WebhookJob.status == JobStatus.PENDING,
                    WebhookJob.attempt_count <= attempt_number,
                )
            )
            .values(
                attempt_count=attempt_number,
                last_error=error,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def list_pending_older_than(
        self,
        threshold: datetime | None = None,
    ) -> Sequence[WebhookJob]:
        """
        List pending jobs, oldest first.

        Args:
            threshold: Only include jobs created at or before this time.
                None means every pending job.

        Returns:
            Pending jobs ordered by creation time ascending.
        """
        stmt = select(WebhookJob).where(WebhookJob.status == JobStatus.PENDING)
        if threshold is not None:
            stmt = stmt.where(WebhookJob.created_at <= threshold)
        stmt = stmt.order_by(WebhookJob.created_at.asc(), WebhookJob.id.asc())

        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_status_summary(self) -> list[StatusSummary]:
        """
        Get job counts and attempt statistics grouped by status.

        Returns:
            One StatusSummary per status present in the store.
        """
        stmt = (
            select(
                WebhookJob.status,
                func.count(WebhookJob.id),
                func.avg(WebhookJob.attempt_count),
                func.max(WebhookJob.attempt_count),
            )
            .group_by(WebhookJob.status)
            .order_by(WebhookJob.status)
        )

        result = await self._session.execute(stmt)
        return [
            StatusSummary(
                status=status,
                count=count,
                avg_attempts=float(avg_attempts or 0),
                max_attempts=max_attempts or 0,
            )
            for status, count, avg_attempts, max_attempts in result.all()
        ]
