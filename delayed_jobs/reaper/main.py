"""
Stale-lock reclaimer.

Finds jobs whose owning worker crashed or hung past the stale-lock timeout
and returns them to the eligible pool. Runs inside every dispatch loop and
can also run as its own process.

Reclaiming does not count as an attempt: only handler failures increment
``attempts``.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delayed_jobs.clock import SystemClock
from delayed_jobs.config import Settings, get_settings
from delayed_jobs.constants import SPAN_RECLAIM_STALE
from delayed_jobs.db.connection import (
    close_engine,
    create_engine,
    create_session_factory,
    session_scope,
)
from delayed_jobs.db.repository import JobRepository
from delayed_jobs.lifecycle import install_shutdown_handlers
from delayed_jobs.observability.logging import setup_logging
from delayed_jobs.observability.metrics import MetricsCollector, get_metrics
from delayed_jobs.observability.tracing import (
    get_tracer,
    instrument_sqlalchemy,
    setup_tracing,
)

logger = logging.getLogger(__name__)


class Reclaimer:
    """
    Releases locks held longer than the stale-lock timeout.

    Each release is a compare-and-set on the lock observed by the scan
    (locked_at and version), so a job whose worker finishes in the meantime
    is left alone.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: timedelta | None = None,
        interval_seconds: float | None = None,
        *,
        clock: Any = None,
        metrics: MetricsCollector | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the reclaimer.

        Args:
            session_factory: Factory for short-lived sessions.
            timeout: Lock age after which a job is presumed abandoned.
            interval_seconds: Seconds between runs when started as a loop.
        """
        settings = settings or get_settings()
        self._session_factory = session_factory
        self.timeout = timeout or timedelta(seconds=settings.stale_lock_timeout_seconds)
        self.interval = interval_seconds or settings.reclaim_interval_seconds
        self._clock = clock or SystemClock()
        self._metrics = metrics or get_metrics()
        self._shutdown_event = asyncio.Event()

    async def run_once(self) -> int:
        """
        Scan for stale locks and release them.

        Returns:
            Number of jobs reclaimed.
        """
        with get_tracer().start_as_current_span(SPAN_RECLAIM_STALE) as span:
            async with session_scope(self._session_factory) as session:
                repo = JobRepository(session, clock=self._clock)
                stale = await repo.find_stale(self.timeout)

                reclaimed = 0
                for job in stale:
                    if await repo.release_stale_lock(job):
                        reclaimed += 1
                        logger.warning(
                            "Reclaimed stale job lock",
                            extra={
                                "job_id": str(job.id),
                                "queue": job.queue_name,
                                "locked_by": job.locked_by,
                                "locked_at": job.locked_at.isoformat() if job.locked_at else None,
                            },
                        )

            span.set_attribute("reclaimed", reclaimed)

        if reclaimed:
            self._metrics.record_stale_reclaimed(reclaimed)
            logger.info(f"Recovered {reclaimed} jobs with stale locks")
        return reclaimed

    async def start(self) -> None:
        """Run the reclaimer loop until stop() is called."""
        logger.info(f"Reclaimer starting with interval {self.interval}s")
        self._shutdown_event.clear()

        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reclaimer loop: {e}")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reclaimer stopped")

    async def stop(self) -> None:
        """Stop the reclaimer loop."""
        logger.info("Reclaimer stopping")
        self._shutdown_event.set()


async def run_async(settings: Settings | None = None) -> None:
    """Run a standalone reclaimer process."""
    settings = settings or get_settings()
    setup_logging(settings)

    engine = create_engine(settings)
    if settings.otel_enabled:
        setup_tracing(settings)
        instrument_sqlalchemy(engine)

    reclaimer = Reclaimer(create_session_factory(engine), settings=settings)

    install_shutdown_handlers(reclaimer.stop)

    try:
        await reclaimer.start()
    finally:
        await close_engine(engine)


def run() -> None:
    """Run the reclaimer."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
