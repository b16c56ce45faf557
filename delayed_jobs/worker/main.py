"""
Worker process: the dispatch loop.

Each tick reclaims stale locks (when due), scans for ready jobs, claims as
many as the pool has room for, and hands every claimed job to a bounded
pool of asyncio tasks. Any number of worker processes may run this loop
against the same database; the claim protocol arbitrates between them.
"""

import asyncio
import logging
import os
import socket
import time
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delayed_jobs.clock import SystemClock
from delayed_jobs.config import Settings, get_settings
from delayed_jobs.constants import SPAN_CLAIM_JOB, SPAN_DISPATCH_TICK, ClaimOutcome
from delayed_jobs.db.connection import (
    close_engine,
    create_engine,
    create_session_factory,
    session_scope,
)
from delayed_jobs.db.models import DelayedJob
from delayed_jobs.db.repository import JobRepository
from delayed_jobs.lifecycle import install_shutdown_handlers
from delayed_jobs.observability.logging import bind_context, setup_logging
from delayed_jobs.observability.metrics import (
    MetricsCollector,
    get_metrics,
    start_metrics_server,
)
from delayed_jobs.observability.tracing import (
    get_tracer,
    instrument_sqlalchemy,
    setup_tracing,
)
from delayed_jobs.reaper.main import Reclaimer
from delayed_jobs.retry import RetryPolicy
from delayed_jobs.types.job import DispatchStats
from delayed_jobs.worker.executor import Executor
from delayed_jobs.worker.handlers import HandlerRegistry, load_handler_modules

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """Worker identity recorded in locked_by: hostname plus PID."""
    return f"{socket.gethostname()}-{os.getpid()}"


class Dispatcher:
    """
    Periodic driver tying reclaim, fetch-ready, claim and execute together.

    Features:
    - Compare-and-set claims; losing a race just moves on to the next candidate
    - Bounded execution pool; the tick never waits on a slow handler
    - Claims only as many jobs as there are free slots
    - Graceful shutdown on SIGTERM/SIGINT, waiting for in-flight jobs
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: HandlerRegistry,
        *,
        settings: Settings | None = None,
        worker_id: str | None = None,
        concurrency: int | None = None,
        batch_size: int | None = None,
        interval: float | None = None,
        executor: Executor | None = None,
        reclaimer: Reclaimer | None = None,
        clock: Any = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            session_factory: Factory for short-lived sessions.
            registry: Handlers available in this process.
            settings: Application settings.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            concurrency: Maximum jobs executing at once in this process.
            batch_size: Candidates fetched per tick.
            interval: Seconds between ticks.
        """
        settings = settings or get_settings()

        self.worker_id = worker_id or settings.worker_id or default_worker_id()
        self.concurrency = concurrency or settings.worker_concurrency
        self.batch_size = batch_size or settings.dispatch_batch_size
        self.interval = interval or settings.dispatch_interval_seconds
        self.reclaim_interval = settings.reclaim_interval_seconds
        self.shutdown_timeout = settings.shutdown_timeout_seconds

        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self._session_factory = session_factory
        self._registry = registry
        self._clock = clock or SystemClock()
        self._metrics = metrics or get_metrics()
        self._executor = executor or Executor(
            session_factory,
            registry,
            RetryPolicy.from_settings(settings),
            clock=self._clock,
            metrics=self._metrics,
            max_error_frames=settings.last_error_max_frames,
        )
        self._reclaimer = reclaimer or Reclaimer(
            session_factory,
            settings=settings,
            clock=self._clock,
            metrics=self._metrics,
        )

        self._running = False
        self._wake_event = asyncio.Event()
        self._current_jobs: dict[UUID, asyncio.Task] = {}
        self._last_reclaim: float | None = None

    @property
    def in_flight(self) -> int:
        """Number of jobs currently executing in this process."""
        return len(self._current_jobs)

    async def start(self) -> None:
        """Run ticks until stop() is called, then drain in-flight jobs."""
        logger.info(
            "Dispatcher starting",
            extra={
                "worker_id": self.worker_id,
                "concurrency": self.concurrency,
                "batch_size": self.batch_size,
                "interval": self.interval,
                "queues": self._registry.queue_types(),
            },
        )
        self._running = True

        while self._running:
            try:
                await self.tick()
            except Exception as e:
                self._metrics.record_dispatch_error()
                logger.exception(
                    f"Error in dispatch loop: {e}",
                    extra={"worker_id": self.worker_id},
                )

            await self._sleep()

        if self._current_jobs:
            logger.info(f"Waiting for {len(self._current_jobs)} jobs to complete")
            try:
                await asyncio.wait_for(self.drain(), timeout=self.shutdown_timeout)
            except TimeoutError:
                logger.warning(
                    "Shutdown timeout reached with jobs still running; their locks will be reclaimed",
                    extra={"worker_id": self.worker_id, "in_flight": self.in_flight},
                )

        logger.info("Dispatcher stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        logger.info("Dispatcher stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._wake_event.set()

    def wake(self) -> None:
        """Cut the current sleep short so the next tick runs now."""
        self._wake_event.set()

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=self.interval)
        except TimeoutError:
            pass
        self._wake_event.clear()

    async def tick(self) -> DispatchStats:
        """
        Run one dispatch cycle.

        Returns:
            Counters describing what the tick did.

        Raises:
            PersistenceError: If the store is unreachable. start() logs it
                and tries again on the next tick.
        """
        stats = DispatchStats()

        with get_tracer().start_as_current_span(SPAN_DISPATCH_TICK) as span:
            span.set_attribute("worker_id", self.worker_id)

            if self._reclaim_due():
                stats.reclaimed = await self._reclaimer.run_once()
                self._last_reclaim = time.monotonic()

            stats.free_slots = self.concurrency - self.in_flight
            if stats.free_slots <= 0:
                logger.debug("Worker pool full, skipping fetch", extra={"worker_id": self.worker_id})
                return stats

            async with session_scope(self._session_factory) as session:
                candidates = await JobRepository(session, clock=self._clock).find_ready_to_run(
                    self.batch_size
                )
            stats.candidates = len(candidates)

            for candidate in candidates:
                if stats.claimed >= stats.free_slots:
                    break

                job = await self._claim(candidate)
                if job is None:
                    stats.contention_misses += 1
                    continue

                stats.claimed += 1
                self._dispatch(job)

            span.set_attribute("candidates", stats.candidates)
            span.set_attribute("claimed", stats.claimed)

        if stats.claimed:
            logger.info(
                f"Claimed {stats.claimed} jobs",
                extra={
                    "worker_id": self.worker_id,
                    "candidates": stats.candidates,
                    "contention_misses": stats.contention_misses,
                },
            )
        return stats

    def _reclaim_due(self) -> bool:
        if self._last_reclaim is None:
            return True
        return time.monotonic() - self._last_reclaim >= self.reclaim_interval

    async def _claim(self, candidate: DelayedJob) -> DelayedJob | None:
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
            span.set_attribute("job_id", str(candidate.id))
            async with session_scope(self._session_factory) as session:
                job = await JobRepository(session, clock=self._clock).claim(
                    candidate.id, self.worker_id
                )
            span.set_attribute("won", job is not None)

        self._metrics.record_claim(ClaimOutcome.WON if job else ClaimOutcome.LOST)
        return job

    def _dispatch(self, job: DelayedJob) -> None:
        task = asyncio.create_task(self._run_job(job))
        self._current_jobs[job.id] = task
        self._metrics.set_in_flight(self.in_flight)

    async def _run_job(self, job: DelayedJob) -> None:
        try:
            await self._executor.execute(job)
        except Exception as e:
            # The job stays locked; the reclaimer frees it after the timeout.
            logger.exception(
                "Exception executing job",
                extra={"job_id": str(job.id), "error": str(e)},
            )
        finally:
            self._current_jobs.pop(job.id, None)
            self._metrics.set_in_flight(self.in_flight)

    async def drain(self) -> None:
        """Wait for every in-flight job to finish."""
        while self._current_jobs:
            await asyncio.gather(*list(self._current_jobs.values()), return_exceptions=True)


async def run_async(settings: Settings | None = None) -> None:
    """Run the worker asynchronously."""
    settings = settings or get_settings()
    setup_logging(settings)

    if settings.metrics_enabled:
        start_metrics_server(settings.prometheus_port)

    engine = create_engine(settings)
    if settings.otel_enabled:
        setup_tracing(settings)
        instrument_sqlalchemy(engine)

    registry = HandlerRegistry()
    load_handler_modules(registry, settings.handler_modules)
    if not len(registry):
        logger.warning("No handlers registered; every claimed job will be reported as misconfigured")

    dispatcher = Dispatcher(create_session_factory(engine), registry, settings=settings)
    bind_context(worker_id=dispatcher.worker_id)

    install_shutdown_handlers(dispatcher.stop)

    try:
        await dispatcher.start()
    finally:
        await close_engine(engine)


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
