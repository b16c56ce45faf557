"""
Job repository for database operations.
Implements the job record store and the claim protocol.

Every state change is a single conditional UPDATE whose WHERE clause encodes
the precondition; the affected row count tells the caller whether it won.
No row locks are held between statements.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from delayed_jobs.clock import SystemClock
from delayed_jobs.constants import JobState
from delayed_jobs.db.models import DelayedJob
from delayed_jobs.exceptions import PersistenceError

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for delayed job database operations.

    Implements atomic operations for:
    - Job creation
    - Ready-to-run and stale-lock scans
    - Claiming with compare-and-set on ``locked``
    - Owner-guarded terminal and retry transitions
    - Stale lock release
    """

    def __init__(self, session: AsyncSession, clock: Any = None):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            clock: Time source with a ``now()`` method. Defaults to wall time.
        """
        self._session = session
        self._clock = clock or SystemClock()

    async def _execute(self, stmt: Any, action: str) -> Any:
        try:
            return await self._session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceError(f"Failed to {action}: {e}") from e

    async def _select(self, stmt: Any, action: str) -> list[DelayedJob]:
        result = await self._execute(
            stmt.execution_options(populate_existing=True), action
        )
        return list(result.scalars().all())

    async def _update(self, stmt: Any, action: str) -> int:
        result = await self._execute(
            stmt.execution_options(synchronize_session=False), action
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_job(
        self,
        queue_name: str,
        payload_ref: str,
        priority: int,
        run_at: datetime,
        max_attempts: int,
    ) -> DelayedJob:
        """
        Insert a new job record.

        Args:
            queue_name: Queue type, selects the handler.
            payload_ref: Opaque reference to the job's business data.
            priority: Higher runs first.
            run_at: Earliest eligible execution time (timezone-aware).
            max_attempts: Executions allowed before terminal failure.

        Returns:
            The persisted DelayedJob.

        Raises:
            ValueError: If run_at is naive.
            PersistenceError: If the insert fails.
        """
        if run_at.tzinfo is None:
            raise ValueError("run_at must be timezone-aware")

        now = self._clock.now()
        job = DelayedJob(
            queue_name=queue_name,
            payload_ref=payload_ref,
            priority=priority,
            run_at=run_at,
            attempts=0,
            max_attempts=max_attempts,
            locked=False,
            complete=False,
            completed_with_failure=False,
            misconfigured=False,
            created_at=now,
            updated_at=now,
            version=0,
        )
        self._session.add(job)
        try:
            await self._session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Failed to create job: {e}")
            raise PersistenceError(f"Failed to create job: {e}") from e

        logger.info(
            "Created delayed job",
            extra={
                "job_id": str(job.id),
                "queue": queue_name,
                "payload_ref": payload_ref,
                "priority": priority,
                "run_at": run_at.isoformat(),
            },
        )
        return job

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def get_job(self, job_id: UUID) -> DelayedJob | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The DelayedJob or None if not found.
        """
        jobs = await self._select(
            select(DelayedJob).where(DelayedJob.id == job_id), "load job"
        )
        return jobs[0] if jobs else None

    async def find_ready_to_run(
        self,
        limit: int,
        queue_names: Iterable[str] | None = None,
    ) -> list[DelayedJob]:
        """
        Find eligible jobs, highest priority first.

        Read-only: candidates must still be claimed one by one.

        Args:
            limit: Maximum number of jobs to return.
            queue_names: Optional restriction to these queue types.

        Returns:
            Unlocked, incomplete jobs with run_at <= now, ordered by
            priority DESC, run_at ASC.
        """
        if limit <= 0:
            return []

        now = self._clock.now()
        stmt = (
            select(DelayedJob)
            .where(
                DelayedJob.locked.is_(False),
                DelayedJob.complete.is_(False),
                DelayedJob.run_at <= now,
            )
            .order_by(
                DelayedJob.priority.desc(),
                DelayedJob.run_at.asc(),
                DelayedJob.created_at.asc(),
            )
            .limit(limit)
        )
        if queue_names is not None:
            names = list(queue_names)
            if not names:
                return []
            stmt = stmt.where(DelayedJob.queue_name.in_(names))

        return await self._select(stmt, "find ready jobs")

    async def find_stale(self, timeout: timedelta) -> list[DelayedJob]:
        """
        Find jobs whose lock is older than the timeout.

        Args:
            timeout: How long a lock may be held before it is presumed abandoned.

        Returns:
            Locked, incomplete jobs with locked_at < now - timeout. Jobs held
            for a missing handler are never stale.
        """
        cutoff = self._clock.now() - timeout
        stmt = (
            select(DelayedJob)
            .where(
                DelayedJob.locked.is_(True),
                DelayedJob.complete.is_(False),
                DelayedJob.locked_at < cutoff,
                DelayedJob.misconfigured.is_(False),
            )
            .order_by(DelayedJob.locked_at.asc())
        )
        return await self._select(stmt, "find stale jobs")

    # ------------------------------------------------------------------
    # Claim protocol
    # ------------------------------------------------------------------

    async def claim(self, job_id: UUID, worker_id: str) -> DelayedJob | None:
        """
        Try to become the exclusive owner of a job.

        Issues ``UPDATE ... SET locked = true WHERE id = :id AND locked = false``
        (plus the job must still be incomplete and due). Exactly one of any
        number of concurrent callers sees one affected row.

        Args:
            job_id: The candidate job.
            worker_id: Identity recorded in locked_by.

        Returns:
            The freshly loaded job if the claim won, None on a contention miss.
        """
        now = self._clock.now()
        stmt = (
            update(DelayedJob)
            .where(
                DelayedJob.id == job_id,
                DelayedJob.locked.is_(False),
                DelayedJob.complete.is_(False),
                DelayedJob.run_at <= now,
            )
            .values(
                locked=True,
                locked_at=now,
                locked_by=worker_id,
                version=DelayedJob.version + 1,
                updated_at=now,
            )
        )
        affected = await self._update(stmt, "claim job")

        if affected != 1:
            logger.debug(
                "Job already claimed or no longer eligible",
                extra={"job_id": str(job_id), "worker_id": worker_id},
            )
            return None

        return await self.get_job(job_id)

    # ------------------------------------------------------------------
    # Owner transitions
    # ------------------------------------------------------------------

    def _owned(self, job: DelayedJob) -> tuple:
        # The claimed version pins ownership: a reclaim or a newer claim bumps it.
        return (
            DelayedJob.id == job.id,
            DelayedJob.version == job.version,
            DelayedJob.locked.is_(True),
            DelayedJob.locked_by == job.locked_by,
            DelayedJob.complete.is_(False),
        )

    async def mark_succeeded(self, job: DelayedJob) -> bool:
        """
        Mark an owned job as successfully completed.

        The lock is left in place; terminal records are never reclaimed.

        Returns:
            True if the transition applied, False if ownership was lost.
        """
        now = self._clock.now()
        stmt = (
            update(DelayedJob)
            .where(*self._owned(job))
            .values(
                complete=True,
                completed_with_failure=False,
                completed_at=now,
                attempts=DelayedJob.attempts + 1,
                version=DelayedJob.version + 1,
                updated_at=now,
            )
        )
        return await self._update(stmt, "mark job succeeded") == 1

    async def schedule_retry(
        self,
        job: DelayedJob,
        run_at: datetime,
        error: str,
    ) -> bool:
        """
        Record a failed attempt and release the job for a later retry.

        Args:
            job: The owned job.
            run_at: When the job becomes eligible again.
            error: Diagnostic text for last_error.

        Returns:
            True if the transition applied, False if ownership was lost.
        """
        now = self._clock.now()
        stmt = (
            update(DelayedJob)
            .where(*self._owned(job))
            .values(
                attempts=DelayedJob.attempts + 1,
                run_at=run_at,
                locked=False,
                locked_at=None,
                locked_by=None,
                last_error=error,
                version=DelayedJob.version + 1,
                updated_at=now,
            )
        )
        return await self._update(stmt, "schedule job retry") == 1

    async def mark_dead_lettered(
        self,
        job: DelayedJob,
        reason: str,
        error: str,
    ) -> bool:
        """
        Record a failed attempt and make the job terminal with failure.

        Args:
            job: The owned job.
            reason: Short failure reason.
            error: Full diagnostic text for last_error.

        Returns:
            True if the transition applied, False if ownership was lost.
        """
        now = self._clock.now()
        stmt = (
            update(DelayedJob)
            .where(*self._owned(job))
            .values(
                attempts=DelayedJob.attempts + 1,
                complete=True,
                completed_with_failure=True,
                failure_reason=reason,
                last_error=error,
                failed_at=now,
                completed_at=now,
                version=DelayedJob.version + 1,
                updated_at=now,
            )
        )
        return await self._update(stmt, "dead-letter job") == 1

    async def record_misconfiguration(self, job: DelayedJob, message: str) -> bool:
        """
        Note a missing handler on an owned job without releasing it.

        The job keeps its lock and is skipped by the stale scan until an
        operator calls release_misconfigured.

        Returns:
            True if the note was written, False if ownership was lost.
        """
        now = self._clock.now()
        stmt = (
            update(DelayedJob)
            .where(*self._owned(job))
            .values(
                last_error=message,
                misconfigured=True,
                version=DelayedJob.version + 1,
                updated_at=now,
            )
        )
        return await self._update(stmt, "record misconfiguration") == 1

    async def release_stale_lock(self, job: DelayedJob) -> bool:
        """
        Free a job abandoned by its owner.

        Guarded on the lock observed by the stale scan, so a worker that
        finishes between the scan and this update is never clobbered.
        Does not touch attempts.

        Returns:
            True if the lock was released.
        """
        now = self._clock.now()
        stmt = (
            update(DelayedJob)
            .where(
                DelayedJob.id == job.id,
                DelayedJob.locked.is_(True),
                DelayedJob.complete.is_(False),
                DelayedJob.locked_at == job.locked_at,
                DelayedJob.version == job.version,
                DelayedJob.misconfigured.is_(False),
            )
            .values(
                locked=False,
                locked_at=None,
                locked_by=None,
                version=DelayedJob.version + 1,
                updated_at=now,
            )
        )
        return await self._update(stmt, "release stale lock") == 1

    # ------------------------------------------------------------------
    # Inspection and operator actions
    # ------------------------------------------------------------------

    async def find_by_queue(self, queue_name: str) -> list[DelayedJob]:
        """List jobs of one queue type in dispatch order."""
        stmt = (
            select(DelayedJob)
            .where(DelayedJob.queue_name == queue_name)
            .order_by(DelayedJob.priority.desc(), DelayedJob.run_at.asc())
        )
        return await self._select(stmt, "find jobs by queue")

    async def find_by_payload_ref(self, payload_ref: str) -> list[DelayedJob]:
        """List jobs referencing one business entity, newest first."""
        stmt = (
            select(DelayedJob)
            .where(DelayedJob.payload_ref == payload_ref)
            .order_by(DelayedJob.created_at.desc())
        )
        return await self._select(stmt, "find jobs by payload ref")

    async def find_incomplete(self) -> list[DelayedJob]:
        """List every non-terminal job in dispatch order."""
        stmt = (
            select(DelayedJob)
            .where(DelayedJob.complete.is_(False))
            .order_by(DelayedJob.priority.desc(), DelayedJob.run_at.asc())
        )
        return await self._select(stmt, "find incomplete jobs")

    async def find_failed(self, limit: int = 100) -> Sequence[DelayedJob]:
        """
        List dead-lettered jobs, most recent failure first.

        Args:
            limit: Maximum number of jobs to return.
        """
        stmt = (
            select(DelayedJob)
            .where(
                DelayedJob.complete.is_(True),
                DelayedJob.completed_with_failure.is_(True),
            )
            .order_by(DelayedJob.failed_at.desc())
            .limit(limit)
        )
        return await self._select(stmt, "find failed jobs")

    async def count_by_state(self) -> dict[str, int]:
        """
        Count jobs per lifecycle state.

        Returns:
            Mapping of JobState value to count; states with no jobs are 0.
        """
        now = self._clock.now()
        state = case(
            (
                DelayedJob.complete.is_(True) & DelayedJob.completed_with_failure.is_(True),
                JobState.DEAD_LETTERED.value,
            ),
            (DelayedJob.complete.is_(True), JobState.SUCCEEDED.value),
            (DelayedJob.locked.is_(True), JobState.OWNED.value),
            (DelayedJob.run_at <= now, JobState.ELIGIBLE.value),
            else_=JobState.SCHEDULED.value,
        ).label("state")
        states = select(state).subquery()
        stmt = select(states.c.state, func.count()).group_by(states.c.state)

        result = await self._execute(stmt, "count jobs by state")
        counts = {s.value: 0 for s in JobState}
        for name, count in result.all():
            counts[name] = count
        return counts

    async def requeue_dead_letter(
        self,
        job_id: UUID,
        reset_attempts: bool = True,
    ) -> DelayedJob | None:
        """
        Put a dead-lettered job back into the eligible pool.

        Args:
            job_id: The job UUID.
            reset_attempts: Whether to reset the attempt counter.

        Returns:
            The requeued job, or None if it is not dead-lettered.
        """
        now = self._clock.now()
        values: dict[str, Any] = {
            "complete": False,
            "completed_with_failure": False,
            "failure_reason": None,
            "last_error": None,
            "failed_at": None,
            "completed_at": None,
            "locked": False,
            "locked_at": None,
            "locked_by": None,
            "run_at": now,
            "version": DelayedJob.version + 1,
            "updated_at": now,
        }
        if reset_attempts:
            values["attempts"] = 0

        stmt = (
            update(DelayedJob)
            .where(
                DelayedJob.id == job_id,
                DelayedJob.complete.is_(True),
                DelayedJob.completed_with_failure.is_(True),
            )
            .values(**values)
        )
        if await self._update(stmt, "requeue dead-lettered job") != 1:
            return None

        logger.info("Requeued dead-lettered job", extra={"job_id": str(job_id)})
        return await self.get_job(job_id)

    async def release_misconfigured(self, job_id: UUID) -> DelayedJob | None:
        """
        Return a job held for a missing handler to the eligible pool.

        Meant for operators once the handler has been deployed. Attempts are
        left untouched: the handler never ran.

        Args:
            job_id: The job UUID.

        Returns:
            The released job, or None if it is not held as misconfigured.
        """
        now = self._clock.now()
        stmt = (
            update(DelayedJob)
            .where(
                DelayedJob.id == job_id,
                DelayedJob.misconfigured.is_(True),
                DelayedJob.complete.is_(False),
            )
            .values(
                misconfigured=False,
                locked=False,
                locked_at=None,
                locked_by=None,
                last_error=None,
                run_at=now,
                version=DelayedJob.version + 1,
                updated_at=now,
            )
        )
        if await self._update(stmt, "release misconfigured job") != 1:
            return None

        logger.info("Released misconfigured job", extra={"job_id": str(job_id)})
        return await self.get_job(job_id)
