"""
Type definitions for the delayed job queue.
"""

from delayed_jobs.types.job import (
    DispatchStats,
    Handler,
    HandlerMetadata,
    JobResult,
)

__all__ = [
    "DispatchStats",
    "Handler",
    "HandlerMetadata",
    "JobResult",
]
