"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

from webhook_relay.constants import JobStatus


class EventPayload(BaseModel):
    """
    The event document delivered to the receiver.
    Captured once at submission; retries resend it unchanged.
    """

    merchantId: str
    amount: float | int
    currency: str
    transactionId: str


class DeliveryResult(BaseModel):
    """
    Result of a single delivery attempt.
    """

    success: bool
    status_code: int | None = None
    error: str | None = None
    duration_ms: float | None = None


class StatusSummary(BaseModel):
    """Aggregate attempt statistics for one job status."""

    status: JobStatus
    count: int
    avg_attempts: float
    max_attempts: int


@dataclass
class WorkItem:
    """
    A claimed dispatch queue item.
    Holds everything a worker needs for one delivery attempt.
    """

    item_id: int
    job_id: int
    payload: dict[str, Any]
    target_url: str
    attempts_made: int
    max_attempts: int
    lease_owner: str
    lease_expires_at: datetime

    @property
    def attempt_number(self) -> int:
        """The number of the attempt about to be made."""
        return self.attempts_made + 1


class FailureKind(StrEnum):
    """What the queue did with a failed attempt."""

    RETRY_SCHEDULED = "retry_scheduled"
    PERMANENTLY_FAILED = "permanently_failed"
    LOST_LEASE = "lost_lease"


@dataclass
class FailureOutcome:
    """Queue bookkeeping result for a failed attempt."""

    kind: FailureKind
    attempts_made: int
    delay_seconds: float | None = None

    @property
    def will_retry(self) -> bool:
        return self.kind == FailureKind.RETRY_SCHEDULED


@dataclass
class StalledRecovery:
    """Items whose lease expired, split by what happened to them."""

    requeued: list[int]
    failed: list["StalledFailure"]

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.failed)


@dataclass
class StalledFailure:
    """An item failed permanently because it stalled too many times."""

    item_id: int
    job_id: int
    attempts_made: int
    error: str


@dataclass
class ReconcileReport:
    """Result of one reconciliation pass over pending jobs."""

    scanned: int = 0
    requeued: list[int] = field(default_factory=list)
    absorbed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
