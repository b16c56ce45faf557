"""
Handler registry.

Maps a job's queue type to the collaborator-supplied function that executes
it. One registry is built at process start and passed to the dispatcher.

Job handlers must be idempotent - they may be executed more than once for the
same job if a worker stalls past the stale-lock timeout.
"""

import importlib
import logging
from collections.abc import Callable, Iterable

from delayed_jobs.constants import DEFAULT_PRIORITY
from delayed_jobs.exceptions import DuplicateHandlerError
from delayed_jobs.types.job import Handler, HandlerMetadata

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """
    Registry of job handlers keyed by queue type.

    Example:
        registry = HandlerRegistry()

        @registry.register("calendar_pdf_render", priority=10)
        async def render_pdf(payload_ref: str) -> JobResult:
            ...
    """

    def __init__(self) -> None:
        self._entries: dict[str, HandlerMetadata] = {}

    def register(
        self,
        queue_type: str,
        handler: Handler | None = None,
        *,
        priority: int = DEFAULT_PRIORITY,
        max_attempts: int | None = None,
        description: str = "",
    ) -> Handler | Callable[[Handler], Handler]:
        """
        Register a handler, directly or as a decorator.

        Args:
            queue_type: The queue type this handler processes.
            handler: The handler; omit to use as a decorator.
            priority: Default priority for jobs enqueued without one.
            max_attempts: Default attempt cutoff for this queue type.
            description: Human-readable description for logs.

        Raises:
            DuplicateHandlerError: If the queue type is already registered.
            ValueError: If queue_type is empty or max_attempts is not positive.
        """
        if not queue_type:
            raise ValueError("queue_type must be a non-empty string")
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be a positive integer")

        def decorator(fn: Handler) -> Handler:
            if queue_type in self._entries:
                raise DuplicateHandlerError(queue_type)
            self._entries[queue_type] = HandlerMetadata(
                queue_type=queue_type,
                handler=fn,
                priority=priority,
                max_attempts=max_attempts,
                description=description,
            )
            logger.info(
                f"Registered handler for queue type: {queue_type}",
                extra={"queue": queue_type, "priority": priority},
            )
            return fn

        if handler is not None:
            return decorator(handler)
        return decorator

    def get(self, queue_type: str) -> Handler | None:
        """
        Get the handler for a queue type.

        Returns:
            The handler function or None if not found.
        """
        entry = self._entries.get(queue_type)
        return entry.handler if entry else None

    def metadata(self, queue_type: str) -> HandlerMetadata | None:
        """Get the registration details for a queue type."""
        return self._entries.get(queue_type)

    def queue_types(self) -> list[str]:
        """List all registered queue types."""
        return list(self._entries.keys())

    def __contains__(self, queue_type: object) -> bool:
        return queue_type in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def load_handler_modules(registry: HandlerRegistry, module_paths: Iterable[str]) -> None:
    """
    Import collaborator modules and let each register its handlers.

    Each module must expose ``register_handlers(registry)``.

    Raises:
        ImportError: If a module cannot be imported.
        AttributeError: If a module has no register_handlers function.
    """
    for path in module_paths:
        module = importlib.import_module(path)
        register = getattr(module, "register_handlers", None)
        if register is None:
            raise AttributeError(f"Handler module {path} has no register_handlers()")
        register(registry)
        logger.info(f"Loaded handler module: {path}")

    logger.info(f"Discovered {len(registry)} delayed job handlers")
