"""
Durable dispatch queue with lease-based ownership and backoff scheduling.

Work items are rows in the queue database. A worker owns an item while its
lease is valid; failed attempts put the item back to waiting with an
available_at in the future, which is the retry timer. Everything here is a
single conditional statement per transition so any number of worker
processes can share the queue.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from webhook_relay.config import Settings
from webhook_relay.constants import LIVE_DISPATCH_STATUSES, DispatchStatus
from webhook_relay.db.connection import Database
from webhook_relay.db.models import utcnow
from webhook_relay.dispatch.backoff import BackoffPolicy
from webhook_relay.dispatch.models import DispatchItem
from webhook_relay.types.job import (
    FailureKind,
    FailureOutcome,
    StalledFailure,
    StalledRecovery,
    WorkItem,
)

logger = logging.getLogger(__name__)

STALLED_ERROR = "job stalled more than allowable limit"


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DispatchQueue:
    """
    Dispatch queue backed by its own database.

    Guarantees:
    - an enqueue with a dedupe key, or for a job that already has a live
      item, is a no-op
    - a waiting item is claimed by exactly one worker
    - only the lease owner can complete or fail an item
    - failed attempts are rescheduled with exponential backoff until the
      item's max_attempts is reached, then the item fails permanently
    """

    def __init__(self, database: Database, settings: Settings):
        """
        Initialize the queue.

        Args:
            database: The queue database (not the job store).
            settings: Retry policy and lease configuration.
        """
        self._db = database
        self._settings = settings
        self.policy = BackoffPolicy(
            base_seconds=settings.backoff_base_seconds,
            max_attempts=settings.max_attempts,
            max_delay_seconds=settings.backoff_max_delay_seconds,
        )
        self.lease_duration = timedelta(seconds=settings.worker_lease_duration_seconds)
        self.max_stalled_count = settings.max_stalled_count

    @property
    def database(self) -> Database:
        return self._db

    async def enqueue(
        self,
        job_id: int,
        payload: dict[str, Any],
        target_url: str,
        dedupe_key: str | None = None,
        attempts_made: int = 0,
    ) -> int | None:
        """
        Admit a work item, eligible immediately.

        Args:
            job_id: The job store id.
            payload: The job's immutable payload.
            target_url: Delivery destination.
            dedupe_key: Optional key; a live item with the same key absorbs
                this enqueue.
            attempts_made: Attempts the job has already used. The item only
                gets what is left of max_attempts.

        Returns:
            The new item id, or None if the enqueue was absorbed.

        Raises:
            IntegrityError: The insert failed for a reason other than a
                live item already holding the job or the dedupe key.
        """
        now = utcnow()
        try:
            async with self._db.session() as session:
                item = DispatchItem(
                    job_id=job_id,
                    dedupe_key=dedupe_key,
                    payload=payload,
                    target_url=target_url,
                    status=DispatchStatus.WAITING,
                    attempts_made=attempts_made,
                    max_attempts=self.policy.max_attempts,
                    backoff_base_seconds=self.policy.base_seconds,
                    backoff_max_delay_seconds=self.policy.max_delay_seconds,
                    available_at=now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(item)
                await session.flush()
                item_id = item.id
        except IntegrityError:
            if not await self.has_live_item(job_id, dedupe_key):
                raise
            logger.info(
                "Enqueue absorbed by a live item",
                extra={"job_id": job_id, "dedupe_key": dedupe_key},
            )
            return None

        logger.info(
            "Enqueued work item",
            extra={"item_id": item_id, "job_id": job_id, "dedupe_key": dedupe_key},
        )
        return item_id

    async def claim(self, worker_id: str) -> WorkItem | None:
        """
        Lease the earliest eligible waiting item.

        Uses FOR UPDATE SKIP LOCKED where the backend supports it; the
        status condition on the update keeps ownership exclusive either way.

        Args:
            worker_id: The claiming worker.

        Returns:
            The claimed WorkItem, or None if nothing is eligible.
        """
        now = utcnow()
        lease_expires_at = now + self.lease_duration

        candidate = aliased(DispatchItem)
        next_id = (
            select(candidate.id)
            .where(
                and_(
                    candidate.status == DispatchStatus.WAITING,
                    candidate.available_at <= now,
                )
            )
            .order_by(candidate.available_at.asc(), candidate.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(DispatchItem)
            .where(
                and_(
                    DispatchItem.id == next_id,
                    DispatchItem.status == DispatchStatus.WAITING,
                )
            )
            .values(
                status=DispatchStatus.ACTIVE,
                lease_owner=worker_id,
                lease_expires_at=lease_expires_at,
                updated_at=now,
            )
            .returning(
                DispatchItem.id,
                DispatchItem.job_id,
                DispatchItem.payload,
                DispatchItem.target_url,
                DispatchItem.attempts_made,
                DispatchItem.max_attempts,
                DispatchItem.lease_expires_at,
            )
            .execution_options(synchronize_session=False)
        )

        async with self._db.session() as session:
            result = await session.execute(stmt)
            row = result.first()

        if row is None:
            return None

        logger.debug(
            "Claimed work item",
            extra={"item_id": row.id, "job_id": row.job_id, "worker_id": worker_id},
        )
        return WorkItem(
            item_id=row.id,
            job_id=row.job_id,
            payload=row.payload,
            target_url=row.target_url,
            attempts_made=row.attempts_made,
            max_attempts=row.max_attempts,
            lease_owner=worker_id,
            lease_expires_at=_as_utc(row.lease_expires_at),
        )

    async def complete(self, item_id: int, worker_id: str) -> bool:
        """
        Mark an active item as completed. Only the lease owner may do this.

        Returns:
            True if the transition was applied.
        """
        now = utcnow()
        stmt = (
            update(DispatchItem)
            .where(
                and_(
                    DispatchItem.id == item_id,
                    DispatchItem.status == DispatchStatus.ACTIVE,
                    DispatchItem.lease_owner == worker_id,
                )
            )
            .values(
                status=DispatchStatus.COMPLETED,
                lease_owner=None,
                lease_expires_at=None,
                finished_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        async with self._db.session() as session:
            result = await session.execute(stmt)
            applied = result.rowcount > 0

        if not applied:
            logger.warning(
                "Worker doesn't own item lease",
                extra={"item_id": item_id, "worker_id": worker_id},
            )
        return applied

    async def fail(self, item_id: int, worker_id: str, error: str) -> FailureOutcome:
        """
        Record a failed attempt and reschedule or permanently fail the item.

        Args:
            item_id: The item id.
            worker_id: The lease owner.
            error: Description of the failure.

        Returns:
            FailureOutcome describing what the queue did.
        """
        now = utcnow()

        async with self._db.session() as session:
            item = (
                await session.execute(
                    select(DispatchItem).where(
                        and_(
                            DispatchItem.id == item_id,
                            DispatchItem.status == DispatchStatus.ACTIVE,
                            DispatchItem.lease_owner == worker_id,
                        )
                    )
                )
            ).scalar_one_or_none()

            if item is None:
                logger.warning(
                    "Worker doesn't own item lease",
                    extra={"item_id": item_id, "worker_id": worker_id},
                )
                return FailureOutcome(kind=FailureKind.LOST_LEASE, attempts_made=0)

            attempts_made = item.attempts_made + 1
            policy = BackoffPolicy(
                base_seconds=item.backoff_base_seconds,
                max_attempts=item.max_attempts,
                max_delay_seconds=item.backoff_max_delay_seconds,
            )

            values: dict[str, Any] = {
                "attempts_made": attempts_made,
                "last_error": error,
                "lease_owner": None,
                "lease_expires_at": None,
                "updated_at": now,
            }
            if policy.is_exhausted(attempts_made):
                outcome = FailureOutcome(
                    kind=FailureKind.PERMANENTLY_FAILED,
                    attempts_made=attempts_made,
                )
                values.update(status=DispatchStatus.FAILED, finished_at=now)
            else:
                delay = policy.delay_for(attempts_made)
                outcome = FailureOutcome(
                    kind=FailureKind.RETRY_SCHEDULED,
                    attempts_made=attempts_made,
                    delay_seconds=delay,
                )
                values.update(
                    status=DispatchStatus.WAITING,
                    available_at=now + timedelta(seconds=delay),
                )

            stmt = (
                update(DispatchItem)
                .where(
                    and_(
                        DispatchItem.id == item_id,
                        DispatchItem.status == DispatchStatus.ACTIVE,
                        DispatchItem.lease_owner == worker_id,
                        DispatchItem.attempts_made == item.attempts_made,
                    )
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)

            if result.rowcount == 0:
                return FailureOutcome(kind=FailureKind.LOST_LEASE, attempts_made=0)

        if outcome.will_retry:
            logger.info(
                f"Retry scheduled in {outcome.delay_seconds:g}s",
                extra={"item_id": item_id, "attempts_made": attempts_made},
            )
        else:
            logger.warning(
                f"Item failed permanently after {attempts_made} attempts",
                extra={"item_id": item_id, "error": error},
            )
        return outcome

    async def extend_lease(self, item_id: int, worker_id: str) -> bool:
        """
        Extend the lease on an active item (heartbeat).

        Returns:
            True if the lease was extended.
        """
        now = utcnow()
        stmt = (
            update(DispatchItem)
            .where(
                and_(
                    DispatchItem.id == item_id,
                    DispatchItem.status == DispatchStatus.ACTIVE,
                    DispatchItem.lease_owner == worker_id,
                )
            )
            .values(
                lease_expires_at=now + self.lease_duration,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        async with self._db.session() as session:
            result = await session.execute(stmt)
            return result.rowcount > 0

    async def recover_stalled(self) -> StalledRecovery:
        """
        Return items with expired leases to waiting.

        A stall does not consume an attempt. An item that stalls more than
        max_stalled_count times fails permanently.

        Returns:
            StalledRecovery listing requeued and failed items.
        """
        now = utcnow()
        recovery = StalledRecovery(requeued=[], failed=[])

        async with self._db.session() as session:
            expired = (
                await session.execute(
                    select(DispatchItem)
                    .where(
                        and_(
                            DispatchItem.status == DispatchStatus.ACTIVE,
                            DispatchItem.lease_expires_at < now,
                        )
                    )
                    .order_by(DispatchItem.id.asc())
                    .with_for_update(skip_locked=True)
                )
            ).scalars().all()

            for item in expired:
                stalled_count = item.stalled_count + 1
                values: dict[str, Any] = {
                    "stalled_count": stalled_count,
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "updated_at": now,
                }
                exceeded = stalled_count > self.max_stalled_count
                if exceeded:
                    values.update(
                        status=DispatchStatus.FAILED,
                        last_error=STALLED_ERROR,
                        finished_at=now,
                    )
                else:
                    values.update(status=DispatchStatus.WAITING, available_at=now)

                result = await session.execute(
                    update(DispatchItem)
                    .where(
                        and_(
                            DispatchItem.id == item.id,
                            DispatchItem.status == DispatchStatus.ACTIVE,
                            DispatchItem.lease_expires_at < now,
                        )
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    continue

                if exceeded:
                    recovery.failed.append(
                        StalledFailure(
                            item_id=item.id,
                            job_id=item.job_id,
                            attempts_made=item.attempts_made,
                            error=STALLED_ERROR,
                        )
                    )
                else:
                    recovery.requeued.append(item.id)

        if recovery.total:
            logger.info(
                f"Recovered {recovery.total} stalled items",
                extra={
                    "requeued": len(recovery.requeued),
                    "failed": len(recovery.failed),
                },
            )
        return recovery

    async def seconds_until_next_eligible(self) -> float | None:
        """
        Time until the earliest waiting item becomes claimable.

        Returns:
            0.0 if something is claimable now, None if nothing is waiting.
        """
        async with self._db.session() as session:
            result = await session.execute(
                select(func.min(DispatchItem.available_at)).where(
                    DispatchItem.status == DispatchStatus.WAITING
                )
            )
            earliest = _as_utc(result.scalar())

        if earliest is None:
            return None
        return max(0.0, (earliest - utcnow()).total_seconds())

    async def get_item(self, item_id: int) -> DispatchItem | None:
        """Get an item by id."""
        async with self._db.session() as session:
            result = await session.execute(
                select(DispatchItem).where(DispatchItem.id == item_id)
            )
            return result.scalar_one_or_none()

    async def has_live_item(self, job_id: int, dedupe_key: str | None = None) -> bool:
        """Whether a waiting or active item holds the job or the dedupe key."""
        holders = DispatchItem.job_id == job_id
        if dedupe_key is not None:
            holders = or_(holders, DispatchItem.dedupe_key == dedupe_key)

        async with self._db.session() as session:
            result = await session.execute(
                select(DispatchItem.id)
                .where(
                    and_(
                        holders,
                        DispatchItem.status.in_(LIVE_DISPATCH_STATUSES),
                    )
                )
                .limit(1)
            )
            return result.first() is not None

    async def get_items_for_job(self, job_id: int) -> Sequence[DispatchItem]:
        """All items ever enqueued for a job, oldest first."""
        async with self._db.session() as session:
            result = await session.execute(
                select(DispatchItem)
                .where(DispatchItem.job_id == job_id)
                .order_by(DispatchItem.id.asc())
            )
            return result.scalars().all()

    async def get_counts(self) -> dict[str, int]:
        """
        Get item counts by status.

        Returns:
            Dictionary of status -> count.
        """
        async with self._db.session() as session:
            result = await session.execute(
                select(DispatchItem.status, func.count()).group_by(DispatchItem.status)
            )
            return {status.value: count for status, count in result.all()}

    async def get_depth(self) -> int:
        """Number of live (waiting or active) items."""
        counts = await self.get_counts()
        return sum(counts.get(status.value, 0) for status in LIVE_DISPATCH_STATUSES)
