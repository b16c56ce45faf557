"""
Job executor.

Runs the handler for a claimed job and records the outcome: success,
rescheduled retry, or dead letter. Every write is guarded on the version the
claim produced, so an executor that lost its lock to the reclaimer cannot
overwrite the new owner's state.
"""

import asyncio
import inspect
import logging
import time
import traceback
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delayed_jobs.clock import SystemClock
from delayed_jobs.constants import SPAN_EXECUTE_JOB, ExecutionOutcome
from delayed_jobs.db.connection import session_scope
from delayed_jobs.db.models import DelayedJob
from delayed_jobs.db.repository import JobRepository
from delayed_jobs.exceptions import DelayedJobError, HandlerNotRegisteredError
from delayed_jobs.observability.metrics import MetricsCollector, get_metrics
from delayed_jobs.observability.tracing import get_tracer
from delayed_jobs.retry import RetryPolicy
from delayed_jobs.types.job import Handler, JobResult
from delayed_jobs.worker.handlers import HandlerRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_FRAMES = 20
DEFAULT_FAILURE_MESSAGE = "Handler reported failure"


@dataclass(frozen=True)
class _Failure:
    """A failed execution: short reason, full diagnostic, retry eligibility."""

    reason: str
    detail: str
    recoverable: bool = True


def _translate_result(result: Any) -> _Failure | None:
    """Map a handler return value to None (success) or a failure."""
    if result is None or result is True:
        return None
    if result is False:
        return _Failure(DEFAULT_FAILURE_MESSAGE, DEFAULT_FAILURE_MESSAGE)
    if isinstance(result, JobResult):
        if result.success:
            return None
        message = result.error or DEFAULT_FAILURE_MESSAGE
        return _Failure(message, message)
    # (ok, error) pair
    if isinstance(result, tuple) and len(result) == 2 and isinstance(result[0], bool):
        ok, error = result
        if ok:
            return None
        message = str(error) if error is not None else DEFAULT_FAILURE_MESSAGE
        return _Failure(message, message)

    message = f"Handler returned unsupported result type: {type(result).__name__}"
    return _Failure(message, message)


class Executor:
    """
    Executes claimed jobs and applies the retry policy.

    Outcomes:
    - handler succeeds -> complete, lock kept for audit
    - handler fails, attempts left -> unlocked, run_at pushed back by backoff
    - handler fails, no attempts left (or non-recoverable) -> dead-lettered
    - no handler registered -> logged, job left locked
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: HandlerRegistry,
        retry_policy: RetryPolicy | None = None,
        *,
        clock: Any = None,
        metrics: MetricsCollector | None = None,
        max_error_frames: int = DEFAULT_MAX_FRAMES,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock or SystemClock()
        self._metrics = metrics or get_metrics()
        self._max_error_frames = max_error_frames

    async def execute(self, job: DelayedJob) -> ExecutionOutcome:
        """
        Execute a single claimed job.

        Args:
            job: A job returned by JobRepository.claim.

        Returns:
            What happened to the job.

        Raises:
            PersistenceError: If the outcome could not be written. The job
                stays locked and is eventually reclaimed.
        """
        handler = self._registry.get(job.queue_name)
        if handler is None:
            return await self._misconfigured(job)

        log_extra = {
            "job_id": str(job.id),
            "queue": job.queue_name,
            "payload_ref": job.payload_ref,
            "attempt": job.attempts + 1,
            "max_attempts": job.max_attempts,
        }
        logger.info("Executing job", extra=log_extra)

        start_time = time.monotonic()
        with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
            span.set_attribute("job_id", str(job.id))
            span.set_attribute("queue", job.queue_name)
            span.set_attribute("attempt", job.attempts + 1)

            failure = await self._invoke(handler, job, span)

        duration = time.monotonic() - start_time

        if failure is None:
            outcome = await self._succeeded(job)
        else:
            outcome = await self._failed(job, failure)

        self._metrics.record_execution(job.queue_name, outcome.value, duration)
        logger.info(
            "Job execution finished",
            extra={**log_extra, "outcome": outcome.value, "duration": f"{duration:.3f}s"},
        )
        return outcome

    async def _invoke(self, handler: Handler, job: DelayedJob, span: Any) -> _Failure | None:
        """Call the handler; translate its result or exception into a failure or None."""
        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(job.payload_ref)
            else:
                result = await asyncio.to_thread(handler, job.payload_ref)
                if inspect.isawaitable(result):
                    result = await result
        except DelayedJobError as e:
            span.record_exception(e)
            logger.warning(
                "Handler raised DelayedJobError",
                extra={"job_id": str(job.id), "error": str(e), "recoverable": e.recoverable},
            )
            return _Failure(str(e), self._format_exception(e), recoverable=e.recoverable)
        except Exception as e:
            span.record_exception(e)
            logger.exception(
                "Handler raised exception",
                extra={"job_id": str(job.id), "error": str(e)},
            )
            return _Failure(
                f"{type(e).__name__}: {e}",
                self._format_exception(e),
            )

        return _translate_result(result)

    def _format_exception(self, exc: BaseException) -> str:
        return "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__, limit=self._max_error_frames)
        ).rstrip()

    async def _succeeded(self, job: DelayedJob) -> ExecutionOutcome:
        async with session_scope(self._session_factory) as session:
            applied = await JobRepository(session, clock=self._clock).mark_succeeded(job)

        if not applied:
            return self._ownership_lost(job)
        return ExecutionOutcome.SUCCEEDED

    async def _failed(self, job: DelayedJob, failure: _Failure) -> ExecutionOutcome:
        attempts = job.attempts + 1

        async with session_scope(self._session_factory) as session:
            repo = JobRepository(session, clock=self._clock)

            if not job.is_retryable or not failure.recoverable:
                applied = await repo.mark_dead_lettered(job, failure.reason, failure.detail)
                outcome = ExecutionOutcome.DEAD_LETTERED
            else:
                next_run_at = self._retry_policy.next_run_at(attempts, self._clock.now())
                applied = await repo.schedule_retry(job, next_run_at, failure.detail)
                outcome = ExecutionOutcome.RETRY_SCHEDULED

        if not applied:
            return self._ownership_lost(job)

        if outcome == ExecutionOutcome.DEAD_LETTERED:
            logger.warning(
                f"Job dead-lettered after {attempts} attempts",
                extra={
                    "job_id": str(job.id),
                    "queue": job.queue_name,
                    "error": failure.reason,
                    "recoverable": failure.recoverable,
                },
            )
        else:
            logger.info(
                "Job scheduled for retry",
                extra={
                    "job_id": str(job.id),
                    "attempt": attempts,
                    "max_attempts": job.max_attempts,
                    "retry_at": next_run_at.isoformat(),
                },
            )
        return outcome

    async def _misconfigured(self, job: DelayedJob) -> ExecutionOutcome:
        error = HandlerNotRegisteredError(job.queue_name)
        logger.error(
            f"{error} - job left locked for operator inspection",
            extra={"job_id": str(job.id), "queue": job.queue_name},
        )
        async with session_scope(self._session_factory) as session:
            applied = await JobRepository(session, clock=self._clock).record_misconfiguration(
                job, str(error)
            )

        if not applied:
            return self._ownership_lost(job)
        self._metrics.record_execution(job.queue_name, ExecutionOutcome.MISCONFIGURED.value, 0.0)
        return ExecutionOutcome.MISCONFIGURED

    def _ownership_lost(self, job: DelayedJob) -> ExecutionOutcome:
        logger.warning(
            "Lost ownership of job before recording outcome - lock was reclaimed",
            extra={"job_id": str(job.id), "worker_id": job.locked_by},
        )
        return ExecutionOutcome.OWNERSHIP_LOST
