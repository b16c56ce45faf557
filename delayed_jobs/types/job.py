"""
Job-related type definitions for internal use.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from delayed_jobs.constants import DEFAULT_PRIORITY


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> "JobResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str) -> "JobResult":
        return cls(success=False, error=error)


# A bare bool or an (ok, error) pair is accepted alongside JobResult.
HandlerReturn = JobResult | bool | tuple[bool, Any] | None

# Handlers receive the job's payload reference and resolve the business data
# themselves. Both coroutine functions and blocking callables are accepted.
Handler = Callable[[str], HandlerReturn | Awaitable[HandlerReturn]]


@dataclass(frozen=True)
class HandlerMetadata:
    """
    Registration details for a queue type.
    Supplies enqueue-time defaults for collaborators that omit them.
    """

    queue_type: str
    handler: Any
    priority: int = DEFAULT_PRIORITY
    max_attempts: int | None = None
    description: str = ""


@dataclass
class DispatchStats:
    """Counters for a single dispatch tick."""

    reclaimed: int = 0
    candidates: int = 0
    claimed: int = 0
    contention_misses: int = 0
    free_slots: int = 0

    @property
    def idle(self) -> bool:
        """True when the tick found nothing to run."""
        return self.candidates == 0
