"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Derived lifecycle state of a job record.

    A record is always in exactly one of:
    - SCHEDULED / ELIGIBLE (not locked, not complete; split on run_at)
    - OWNED (locked, not complete)
    - SUCCEEDED / DEAD_LETTERED (complete)
    """

    SCHEDULED = "scheduled"
    ELIGIBLE = "eligible"
    OWNED = "owned"
    SUCCEEDED = "succeeded"
    DEAD_LETTERED = "dead_lettered"


class ExecutionOutcome(StrEnum):
    """Result of one Executor pass over a claimed job."""

    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    MISCONFIGURED = "misconfigured"
    OWNERSHIP_LOST = "ownership_lost"


class ClaimOutcome(StrEnum):
    """Result of a single claim attempt."""

    WON = "won"
    LOST = "lost"


# Default values
DEFAULT_PRIORITY = 5
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_BASE_DELAY_SECONDS = 30
DEFAULT_RETRY_MAX_DELAY_SECONDS = 30 * 60
DEFAULT_STALE_LOCK_TIMEOUT_SECONDS = 5 * 60

# Column limits
QUEUE_NAME_MAX_LENGTH = 100
PAYLOAD_REF_MAX_LENGTH = 255
WORKER_ID_MAX_LENGTH = 255

# Metrics names
METRIC_JOBS_ENQUEUED = "delayed_jobs_enqueued_total"
METRIC_CLAIMS = "delayed_jobs_claims_total"
METRIC_EXECUTIONS = "delayed_jobs_executions_total"
METRIC_EXECUTION_DURATION = "delayed_jobs_execution_duration_seconds"
METRIC_STALE_RECLAIMED = "delayed_jobs_stale_locks_reclaimed_total"
METRIC_DISPATCH_ERRORS = "delayed_jobs_dispatch_errors_total"
METRIC_IN_FLIGHT = "delayed_jobs_in_flight"

# Trace span names
SPAN_DISPATCH_TICK = "dispatch_tick"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_RECLAIM_STALE = "reclaim_stale_locks"
