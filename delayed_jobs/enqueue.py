"""
Enqueue API used by business services.

Enqueueing only inserts a row; it participates in the caller's transaction,
so a job is never visible to workers unless the caller's unit of work
commits.
"""

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from delayed_jobs.clock import SystemClock
from delayed_jobs.config import Settings, get_settings
from delayed_jobs.constants import DEFAULT_PRIORITY
from delayed_jobs.db.repository import JobRepository
from delayed_jobs.observability.metrics import MetricsCollector, get_metrics
from delayed_jobs.retry import resolve_max_attempts
from delayed_jobs.worker.handlers import HandlerRegistry

logger = logging.getLogger(__name__)


async def enqueue(
    session: AsyncSession,
    queue_type: str,
    payload_ref: str,
    priority: int | None = None,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
    *,
    registry: HandlerRegistry | None = None,
    settings: Settings | None = None,
    clock: Any = None,
    metrics: MetricsCollector | None = None,
) -> UUID:
    """
    Insert a new job record.

    Args:
        session: The caller's session; the caller commits.
        queue_type: Selects the handler that will execute the job.
        payload_ref: Opaque reference to the business data (e.g. an order id).
        priority: Higher runs first. Defaults to the queue's registered
            priority, else DEFAULT_PRIORITY.
        run_at: Earliest execution time (timezone-aware). Defaults to now.
        max_attempts: Attempt cutoff. Defaults to the queue's registered
            value, else settings.default_max_attempts.
        registry: Optional registry supplying per-queue defaults.
        settings: Application settings.
        clock: Time source with a ``now()`` method.
        metrics: Metrics collector.

    Returns:
        The new job's id.

    Raises:
        ValueError: On an empty queue type, naive run_at or invalid max_attempts.
        PersistenceError: If the insert fails.
    """
    if not queue_type:
        raise ValueError("queue_type must be a non-empty string")
    if run_at is not None and run_at.tzinfo is None:
        raise ValueError("run_at must be timezone-aware")

    settings = settings or get_settings()
    clock = clock or SystemClock()
    metrics = metrics or get_metrics()

    meta = registry.metadata(queue_type) if registry is not None else None
    if priority is None:
        priority = meta.priority if meta else DEFAULT_PRIORITY
    if max_attempts is None and meta is not None:
        max_attempts = meta.max_attempts
    max_attempts = resolve_max_attempts(max_attempts, settings.default_max_attempts)

    repo = JobRepository(session, clock=clock)
    job = await repo.create_job(
        queue_name=queue_type,
        payload_ref=payload_ref,
        priority=priority,
        run_at=run_at or clock.now(),
        max_attempts=max_attempts,
    )
    metrics.record_job_enqueued(queue_type)
    return job.id


async def enqueue_with_delay(
    session: AsyncSession,
    queue_type: str,
    payload_ref: str,
    delay: timedelta,
    priority: int | None = None,
    max_attempts: int | None = None,
    **kwargs: Any,
) -> UUID:
    """
    Insert a job that becomes eligible after ``delay``.

    Raises:
        ValueError: If delay is negative.
    """
    if delay < timedelta(0):
        raise ValueError("delay must not be negative")

    clock = kwargs.get("clock") or SystemClock()
    kwargs["clock"] = clock
    return await enqueue(
        session,
        queue_type,
        payload_ref,
        priority=priority,
        run_at=clock.now() + delay,
        max_attempts=max_attempts,
        **kwargs,
    )
