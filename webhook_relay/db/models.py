"""
SQLAlchemy models for the job store.
Defines the webhook_jobs table, the durable source of truth for every event.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from webhook_relay.constants import JobStatus

# JSONB on PostgreSQL, plain JSON elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class StoreBase(DeclarativeBase):
    """Base class for job store models."""

    pass


class WebhookJob(StoreBase):
    """
    A submitted webhook event and its delivery status.

    Key constraints:
    - idempotency_key is unique, so a repeated submission never creates a second row
    - payload and target_url are written once at creation and never updated
    - status only moves pending -> delivered or pending -> failed
    """

    __tablename__ = "webhook_jobs"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    merchant_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    payload: Mapped[dict] = mapped_column(
        JSONDocument,
        nullable=False,
    )
    target_url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="webhook_job_status",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )
    idempotency_key: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    attempt_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_webhook_jobs_idempotency_key"),
        # Ordered scans of pending jobs for the reconciler
        Index("ix_webhook_jobs_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        """True once the job is delivered or permanently failed."""
        return self.status in (JobStatus.DELIVERED, JobStatus.FAILED)

    def __repr__(self) -> str:
        return (
            f"WebhookJob(id={self.id}, merchant={self.merchant_id}, "
            f"status={self.status}, attempts={self.attempt_count})"
        )
