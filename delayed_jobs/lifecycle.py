"""
Process lifecycle helpers shared by the worker and reclaimer entry points.
"""

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_shutdown_handlers(stop: Callable[[], Awaitable[None]]) -> set[asyncio.Task]:
    """
    Route SIGTERM and SIGINT to ``stop`` on the running loop.

    The event loop keeps only weak references to tasks, so every stop task is
    held in the returned set until it finishes.

    Args:
        stop: Coroutine function that begins a graceful shutdown.

    Returns:
        The set holding in-flight stop tasks.
    """
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task] = set()

    def _request_stop() -> None:
        logger.info("Shutdown signal received")
        task = loop.create_task(stop())
        pending.add(task)
        task.add_done_callback(pending.discard)

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _request_stop)
    return pending
