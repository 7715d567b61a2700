"""Structured logging configuration using structlog.

Call setup_logging() once at application startup before any log calls, or
let MemoryEngine.from_settings(configure_logging=True) do it. Every event
emitted inside an engine call carries the session id and operation bound by
bind_invocation(), including events from stages running in child tasks.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

COMPONENT = "graphmem"


def _add_component(_logger, _method_name: str, event_dict: dict) -> dict:
    """Tag events so host applications can route graphmem logs separately."""
    event_dict.setdefault("component", COMPONENT)
    return event_dict


@contextmanager
def bind_invocation(session_id: str, operation: str) -> Iterator[None]:
    """Bind session_id and operation for every log event in this call."""
    with structlog.contextvars.bound_contextvars(
        session_id=session_id, operation=operation
    ):
        yield


def setup_logging(*, json_output: bool = True, log_level: str = "INFO") -> None:
    """Configure structlog for the memory engine.

    Args:
        json_output: If True, render logs as JSON. If False, use dev-friendly console output.
        log_level: Minimum log level to emit (DEBUG, INFO, WARNING, ERROR).

    Output goes to stderr; stdout stays free for the host application.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_component,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
