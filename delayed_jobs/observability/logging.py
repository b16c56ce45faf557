"""
Structured logging setup using structlog.

Modules log through ``logging.getLogger(__name__)`` and pass structured
fields via ``extra``; a structlog ProcessorFormatter on the root handler
turns every record into JSON (or coloured console output in development).
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from delayed_jobs.config import Settings, get_settings

# Libraries that log every statement at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncpg")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach trace_id/span_id of the active span so logs join up with traces."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _renderer(log_format: str) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging(settings: Settings | None = None) -> None:
    """
    Route all stdlib logging through structlog.

    Called once by the worker and reaper entry points before anything else
    logs.

    Args:
        settings: Application settings; ``log_level`` and ``log_format``
            (``json`` or ``console``) are used.
    """
    settings = settings or get_settings()

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(settings.log_format),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> None:
    """
    Bind fields to every subsequent log line in this context.

    The worker binds its ``worker_id`` once at startup.
    """
    structlog.contextvars.bind_contextvars(**kwargs)
