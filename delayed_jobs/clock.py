"""
Time source shared by the store, executor and dispatch loop.

Every component takes a clock so tests can move time forward without
sleeping or editing rows by hand.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return utc_now()
