"""
Exception hierarchy for the delayed job queue.

Claim contention is not represented here: losing a claim race is an expected
outcome and is reported as a return value.
"""


class DelayedJobQueueError(Exception):
    """Base exception for job queue operations."""

    pass


class PersistenceError(DelayedJobQueueError):
    """Raised when the job store cannot be read or written."""

    pass


class HandlerNotRegisteredError(DelayedJobQueueError):
    """Raised when a queue type has no handler in this process."""

    def __init__(self, queue_type: str):
        super().__init__(f"No handler registered for queue type: {queue_type}")
        self.queue_type = queue_type


class DuplicateHandlerError(DelayedJobQueueError):
    """Raised when two handlers are registered for the same queue type."""

    def __init__(self, queue_type: str):
        super().__init__(f"Handler already registered for queue type: {queue_type}")
        self.queue_type = queue_type


class DelayedJobError(Exception):
    """
    Raised by job handlers to report a failure.

    A non-recoverable error dead-letters the job immediately instead of
    consuming the remaining attempts.
    """

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable
