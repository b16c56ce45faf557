"""
Worker module.
Contains the handler registry, the executor and the dispatch loop.
"""

from delayed_jobs.worker.executor import Executor
from delayed_jobs.worker.handlers import HandlerRegistry, load_handler_modules
from delayed_jobs.worker.main import Dispatcher, run

__all__ = [
    "Dispatcher",
    "Executor",
    "HandlerRegistry",
    "load_handler_modules",
    "run",
]
