"""
SQLAlchemy models for the dispatch queue.

The queue lives in its own database. Its rows are derived work items that can
always be rebuilt from the job store.
"""

from datetime import datetime

from sqlalchemy import (
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from webhook_relay.constants import DispatchStatus
from webhook_relay.db.models import JSONDocument, utcnow

_LIVE_ITEM = text("status IN ('waiting', 'active')")


class QueueBase(DeclarativeBase):
    """Base class for dispatch queue models."""

    pass


class DispatchItem(QueueBase):
    """
    A unit of delivery work.

    Key constraints:
    - at most one live (waiting/active) item per job, so attempts for a job
      never overlap
    - at most one live item per dedupe_key
    - lease_owner / lease_expires_at identify the single worker running an
      active item
    - available_at orders waiting items; it is the retry timer
    """

    __tablename__ = "dispatch_items"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    job_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        index=True,
    )
    dedupe_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    payload: Mapped[dict] = mapped_column(
        JSONDocument,
        nullable=False,
    )
    target_url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    status: Mapped[DispatchStatus] = mapped_column(
        Enum(
            DispatchStatus,
            name="dispatch_status",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=DispatchStatus.WAITING,
    )

    # Retry policy captured at enqueue time
    attempts_made: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    backoff_base_seconds: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )
    backoff_max_delay_seconds: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    stalled_count: Mapped[int] = mapped_column(
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
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index(
            "uq_dispatch_items_live_job",
            "job_id",
            unique=True,
            postgresql_where=_LIVE_ITEM,
            sqlite_where=_LIVE_ITEM,
        ),
        Index(
            "uq_dispatch_items_live_dedupe",
            "dedupe_key",
            unique=True,
            postgresql_where=_LIVE_ITEM,
            sqlite_where=_LIVE_ITEM,
        ),
        # Index for efficient queue polling
        Index("ix_dispatch_items_poll", "status", "available_at"),
        # Index for lease expiry checks
        Index("ix_dispatch_items_lease_expiry", "status", "lease_expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"DispatchItem(id={self.id}, job={self.job_id}, status={self.status}, "
            f"attempts={self.attempts_made}/{self.max_attempts})"
        )
