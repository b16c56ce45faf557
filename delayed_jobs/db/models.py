"""
SQLAlchemy database models.
Defines the delayed_jobs table, the only persistent entity of the queue.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from delayed_jobs.constants import (
    DEFAULT_PRIORITY,
    PAYLOAD_REF_MAX_LENGTH,
    QUEUE_NAME_MAX_LENGTH,
    WORKER_ID_MAX_LENGTH,
    JobState,
)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime on every backend.

    PostgreSQL stores TIMESTAMPTZ natively; SQLite has no zone support, so
    values are stored as naive UTC and tagged with UTC again on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime is not allowed; use an aware UTC value")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class DelayedJob(Base):
    """
    A persisted unit of deferred work.

    The table is the only state shared between worker processes. It is
    mutated exclusively through conditional UPDATE statements issued by
    JobRepository; every mutation bumps ``version``.

    Records are never deleted by the queue. Terminal records (``complete``)
    keep their last lock state for audit.
    """

    __tablename__ = "delayed_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Routing and business reference
    queue_name: Mapped[str] = mapped_column(
        String(QUEUE_NAME_MAX_LENGTH),
        nullable=False,
    )
    payload_ref: Mapped[str] = mapped_column(
        String(PAYLOAD_REF_MAX_LENGTH),
        nullable=False,
    )

    # Scheduling
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_PRIORITY,
    )
    run_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)

    # Ownership
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(
        String(WORKER_ID_MAX_LENGTH),
        nullable=True,
    )

    # Outcome
    complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_with_failure: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    # Set when no handler was registered; such a job stays locked for an operator
    misconfigured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Bookkeeping
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        server_default=func.now(),
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        # Ready-to-run scan
        Index("ix_delayed_jobs_ready", "complete", "locked", "run_at", "priority"),
        # Stale-lock scan
        Index("ix_delayed_jobs_locked_at", "locked", "locked_at"),
        # Dead-letter inspection
        Index("ix_delayed_jobs_failed_at", "failed_at"),
        Index("ix_delayed_jobs_queue_name", "queue_name"),
        Index("ix_delayed_jobs_payload_ref", "payload_ref"),
    )

    def state_at(self, now: datetime) -> JobState:
        """Classify this record into exactly one lifecycle state."""
        if self.complete:
            if self.completed_with_failure:
                return JobState.DEAD_LETTERED
            return JobState.SUCCEEDED
        if self.locked:
            return JobState.OWNED
        if self.run_at <= now:
            return JobState.ELIGIBLE
        return JobState.SCHEDULED

    @property
    def is_dead_lettered(self) -> bool:
        return self.complete and self.completed_with_failure

    @property
    def is_retryable(self) -> bool:
        """Check if another failed attempt would still be retried."""
        return self.attempts + 1 < self.max_attempts

    def __repr__(self) -> str:
        return (
            f"DelayedJob(id={self.id}, queue={self.queue_name}, "
            f"payload_ref={self.payload_ref}, attempts={self.attempts}/{self.max_attempts}, "
            f"locked={self.locked}, complete={self.complete})"
        )
