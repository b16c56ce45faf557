"""
Unit tests for the job executor.
"""

import dataclasses
import threading
from datetime import timedelta

import pytest
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delayed_jobs.constants import ExecutionOutcome
from delayed_jobs.db.connection import session_scope
from delayed_jobs.db.models import DelayedJob
from delayed_jobs.db.repository import JobRepository
from delayed_jobs.exceptions import DelayedJobError
from delayed_jobs.observability.metrics import MetricsCollector
from delayed_jobs.retry import RetryPolicy
from delayed_jobs.types.job import JobResult
from delayed_jobs.worker.executor import Executor, _Failure, _translate_result
from delayed_jobs.worker.handlers import HandlerRegistry
from tests.conftest import ManualClock

QUEUE = "calendar_pdf_render"


def deep_failure(depth: int) -> None:
    if depth == 0:
        raise ValueError("deep failure")
    deep_failure(depth - 1)


class TestExecutor:
    """Tests for Executor."""

    @pytest.fixture
    def executor(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: HandlerRegistry,
        clock: ManualClock,
        metrics: MetricsCollector,
    ) -> Executor:
        return Executor(session_factory, registry, RetryPolicy(), clock=clock, metrics=metrics)

    @pytest.fixture
    def claim_job(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: ManualClock,
    ):
        """Create a job (once) and claim it, the way the dispatcher would."""

        async def _claim(job_id=None, max_attempts: int = 3, queue_name: str = QUEUE) -> DelayedJob:
            async with session_scope(session_factory) as session:
                repo = JobRepository(session, clock=clock)
                if job_id is None:
                    job = await repo.create_job(
                        queue_name=queue_name,
                        payload_ref="order-1",
                        priority=5,
                        run_at=clock.now(),
                        max_attempts=max_attempts,
                    )
                    job_id = job.id
            async with session_scope(session_factory) as session:
                claimed = await JobRepository(session, clock=clock).claim(job_id, "test-worker")
            assert claimed is not None
            return claimed

        return _claim

    async def load(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        job: DelayedJob,
    ) -> DelayedJob:
        async with session_scope(session_factory) as session:
            return await JobRepository(session).get_job(job.id)

    async def test_success(
        self,
        executor: Executor,
        registry: HandlerRegistry,
        claim_job,
        session_factory,
        metrics_registry: CollectorRegistry,
    ):
        """Test that a successful handler completes the job."""
        seen = []

        @registry.register(QUEUE)
        async def handler(payload_ref: str) -> JobResult:
            seen.append(payload_ref)
            return JobResult.ok()

        job = await claim_job()
        outcome = await executor.execute(job)

        assert outcome == ExecutionOutcome.SUCCEEDED
        assert seen == ["order-1"]

        loaded = await self.load(session_factory, job)
        assert loaded.complete is True
        assert loaded.completed_with_failure is False
        assert loaded.attempts == 1
        assert metrics_registry.get_sample_value(
            "delayed_jobs_executions_total",
            {"queue": QUEUE, "outcome": "succeeded"},
        ) == 1.0

    @pytest.mark.parametrize("result", [None, True, (True, None)])
    async def test_plain_return_values_are_success(self, executor, registry, claim_job, result):
        registry.register(QUEUE, lambda payload_ref: result)

        assert await executor.execute(await claim_job()) == ExecutionOutcome.SUCCEEDED

    async def test_sync_handler_runs_off_the_event_loop(
        self,
        executor: Executor,
        registry: HandlerRegistry,
        claim_job,
    ):
        """Test that blocking handlers run in a worker thread."""
        threads = []

        def handler(payload_ref: str) -> bool:
            threads.append(threading.current_thread())
            return True

        registry.register(QUEUE, handler)

        assert await executor.execute(await claim_job()) == ExecutionOutcome.SUCCEEDED
        assert threads and threads[0] is not threading.main_thread()

    async def test_exception_schedules_retry_with_backoff(
        self,
        executor: Executor,
        registry: HandlerRegistry,
        claim_job,
        session_factory,
        clock: ManualClock,
    ):
        """Test that a first failure releases the job for base_delay later."""

        @registry.register(QUEUE)
        async def handler(payload_ref: str) -> None:
            raise RuntimeError("renderer unavailable")

        job = await claim_job()
        failed_at = clock.now()
        outcome = await executor.execute(job)

        assert outcome == ExecutionOutcome.RETRY_SCHEDULED
        loaded = await self.load(session_factory, job)
        assert loaded.attempts == 1
        assert loaded.locked is False
        assert loaded.locked_by is None
        assert loaded.complete is False
        assert loaded.run_at == failed_at + timedelta(seconds=30)
        assert loaded.last_error.startswith("Traceback")
        assert "RuntimeError: renderer unavailable" in loaded.last_error

    @pytest.mark.parametrize(
        "result, expected_error",
        [
            (JobResult.failed("calendar not found"), "calendar not found"),
            (False, "Handler reported failure"),
            ((False, "calendar not found"), "calendar not found"),
            ((False, None), "Handler reported failure"),
            (42, "Handler returned unsupported result type: int"),
        ],
    )
    async def test_reported_failure_schedules_retry(
        self,
        executor: Executor,
        registry: HandlerRegistry,
        claim_job,
        session_factory,
        result,
        expected_error: str,
    ):
        registry.register(QUEUE, lambda payload_ref: result)

        job = await claim_job()
        assert await executor.execute(job) == ExecutionOutcome.RETRY_SCHEDULED

        loaded = await self.load(session_factory, job)
        assert loaded.last_error == expected_error

    async def test_retries_are_bounded(
        self,
        executor: Executor,
        registry: HandlerRegistry,
        claim_job,
        session_factory,
        clock: ManualClock,
    ):
        """Test that a job failing forever is dead-lettered after max_attempts."""

        @registry.register(QUEUE)
        async def handler(payload_ref: str) -> None:
            raise RuntimeError("boom")

        outcomes = []
        job = await claim_job(max_attempts=3)
        outcomes.append(await executor.execute(job))
        for _ in range(2):
            clock.advance(hours=1)
            job = await claim_job(job_id=job.id)
            outcomes.append(await executor.execute(job))

        assert outcomes == [
            ExecutionOutcome.RETRY_SCHEDULED,
            ExecutionOutcome.RETRY_SCHEDULED,
            ExecutionOutcome.DEAD_LETTERED,
        ]

        loaded = await self.load(session_factory, job)
        assert loaded.attempts == 3
        assert loaded.complete is True
        assert loaded.completed_with_failure is True
        assert loaded.failure_reason == "RuntimeError: boom"
        assert loaded.failed_at == clock.now()

        clock.advance(days=1)
        async with session_scope(session_factory) as session:
            assert await JobRepository(session, clock=clock).find_ready_to_run(10) == []

    async def test_single_attempt_job_dead_letters_immediately(
        self,
        executor: Executor,
        registry: HandlerRegistry,
        claim_job,
    ):
        registry.register(QUEUE, lambda payload_ref: False)

        job = await claim_job(max_attempts=1)
        assert await executor.execute(job) == ExecutionOutcome.DEAD_LETTERED

    async def test_non_recoverable_error_dead_letters(
        self,
        executor: Executor,
        registry: HandlerRegistry,
        claim_job,
        session_factory,
    ):
        """Test that a non-recoverable failure skips the remaining attempts."""

        @registry.register(QUEUE)
        async def handler(payload_ref: str) -> None:
            raise DelayedJobError("calendar deleted", recoverable=False)

        job = await claim_job(max_attempts=5)
        assert await executor.execute(job) == ExecutionOutcome.DEAD_LETTERED

        loaded = await self.load(session_factory, job)
        assert loaded.attempts == 1
        assert loaded.failure_reason == "calendar deleted"
        assert loaded.completed_with_failure is True

    async def test_recoverable_error_retries(self, executor, registry, claim_job):

        @registry.register(QUEUE)
        async def handler(payload_ref: str) -> None:
            raise DelayedJobError("try later")

        assert await executor.execute(await claim_job()) == ExecutionOutcome.RETRY_SCHEDULED

    async def test_error_trace_is_truncated(
        self,
        session_factory,
        registry: HandlerRegistry,
        clock: ManualClock,
        metrics: MetricsCollector,
        claim_job,
    ):
        """Test that last_error keeps only the configured number of frames."""
        executor = Executor(session_factory, registry, clock=clock, metrics=metrics, max_error_frames=2)

        @registry.register(QUEUE)
        async def handler(payload_ref: str) -> None:
            deep_failure(10)

        job = await claim_job()
        await executor.execute(job)

        loaded = await self.load(session_factory, job)
        frames = [line for line in loaded.last_error.splitlines() if line.startswith("  File ")]
        assert len(frames) == 2
        assert loaded.last_error.endswith("ValueError: deep failure")

    async def test_missing_handler_leaves_job_locked(
        self,
        executor: Executor,
        claim_job,
        session_factory,
        metrics_registry: CollectorRegistry,
    ):
        """Test that a job with no handler is reported, not failed."""
        job = await claim_job(queue_name="unknown_queue")

        assert await executor.execute(job) == ExecutionOutcome.MISCONFIGURED

        loaded = await self.load(session_factory, job)
        assert loaded.locked is True
        assert loaded.complete is False
        assert loaded.misconfigured is True
        assert loaded.attempts == 0
        assert loaded.last_error == "No handler registered for queue type: unknown_queue"
        assert metrics_registry.get_sample_value(
            "delayed_jobs_executions_total",
            {"queue": "unknown_queue", "outcome": "misconfigured"},
        ) == 1.0

    async def test_ownership_lost_after_reclaim(
        self,
        executor: Executor,
        registry: HandlerRegistry,
        claim_job,
        session_factory,
        clock: ManualClock,
    ):
        """Test that a worker whose lock was reclaimed records nothing."""

        @registry.register(QUEUE)
        async def handler(payload_ref: str) -> None:
            # Stalls past the timeout; meanwhile the lock is reclaimed.
            clock.advance(seconds=301)
            async with session_scope(session_factory) as session:
                repo = JobRepository(session, clock=clock)
                for stale in await repo.find_stale(timedelta(seconds=300)):
                    await repo.release_stale_lock(stale)

        job = await claim_job()
        assert await executor.execute(job) == ExecutionOutcome.OWNERSHIP_LOST

        loaded = await self.load(session_factory, job)
        assert loaded.locked is False
        assert loaded.complete is False
        assert loaded.attempts == 0


class TestTranslateResult:
    """Tests for mapping handler return values to failures."""

    @pytest.mark.parametrize("result", [None, True, JobResult.ok(), (True, None), (True, "ignored")])
    def test_success_values(self, result):
        assert _translate_result(result) is None

    def test_failure_pair_uses_error_text(self):
        failure = _translate_result((False, ValueError("bad calendar id")))

        assert failure == _Failure("bad calendar id", "bad calendar id")
        assert failure.recoverable is True

    def test_three_tuple_is_unsupported(self):
        failure = _translate_result((False, "a", "b"))

        assert failure.reason == "Handler returned unsupported result type: tuple"

    def test_failure_is_immutable(self):
        failure = _translate_result(False)

        with pytest.raises(dataclasses.FrozenInstanceError):
            failure.recoverable = False
