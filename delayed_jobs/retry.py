"""
Retry and backoff policy.

Pure functions: no I/O and no clock access. The executor supplies ``now``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from delayed_jobs.config import Settings
from delayed_jobs.constants import (
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
)

# 2**63 seconds already exceeds any sane ceiling
_MAX_EXPONENT = 63


def backoff(
    attempts: int,
    base_delay: timedelta = timedelta(seconds=DEFAULT_RETRY_BASE_DELAY_SECONDS),
    max_delay: timedelta = timedelta(seconds=DEFAULT_RETRY_MAX_DELAY_SECONDS),
) -> timedelta:
    """
    Delay before the next attempt after ``attempts`` failed executions.

    Exponential: base_delay, 2 * base_delay, 4 * base_delay, ... capped at
    max_delay. Non-decreasing in ``attempts``.

    Args:
        attempts: Executions attempted so far (including the one that just failed).
        base_delay: Delay after the first failure; also the floor.
        max_delay: Ceiling.

    Returns:
        The delay as a timedelta.
    """
    exponent = min(max(attempts - 1, 0), _MAX_EXPONENT)
    seconds = base_delay.total_seconds() * (2**exponent)
    return timedelta(seconds=min(seconds, max_delay.total_seconds()))


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a floor and a ceiling."""

    base_delay: timedelta = timedelta(seconds=DEFAULT_RETRY_BASE_DELAY_SECONDS)
    max_delay: timedelta = timedelta(seconds=DEFAULT_RETRY_MAX_DELAY_SECONDS)

    def __post_init__(self) -> None:
        if self.base_delay <= timedelta(0):
            raise ValueError("base_delay must be positive")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay=timedelta(seconds=settings.retry_base_delay_seconds),
            max_delay=timedelta(seconds=settings.retry_max_delay_seconds),
        )

    def backoff(self, attempts: int) -> timedelta:
        return backoff(attempts, self.base_delay, self.max_delay)

    def next_run_at(self, attempts: int, now: datetime) -> datetime:
        """When a job that has failed ``attempts`` times becomes eligible again."""
        return now + self.backoff(attempts)


def resolve_max_attempts(value: int | None, default: int) -> int:
    """
    Pick the attempt cutoff for a new job.

    Every job carries a finite, explicit limit so nothing retries forever.

    Raises:
        ValueError: If the resolved value is not a positive integer.
    """
    resolved = default if value is None else value
    if isinstance(resolved, bool) or not isinstance(resolved, int) or resolved < 1:
        raise ValueError(f"max_attempts must be a positive integer, got {resolved!r}")
    return resolved
