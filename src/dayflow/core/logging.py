"""Logging setup for the dayflow CLI and service.

Modules keep logging through ``logging.getLogger(__name__)``; structlog's
ProcessorFormatter renders those records as console text or JSON lines. Every
record carries the configured ``user_id`` and the active OTel trace and span
ids, so sync and token-refresh logs can be joined with traces.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_user_id: ContextVar[str | None] = ContextVar("dayflow_user_id", default=None)

# httpx logs full request URLs, including OAuth query strings, at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg")

_NO_TRACE = "0" * 32
_NO_SPAN = "0" * 16


def set_user_context(user_id: str | None) -> None:
    """Tag records emitted from the current context with *user_id*."""
    _user_id.set(user_id)


def add_user_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    event_dict["user_id"] = _user_id.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    span_context = trace.get_current_span().get_span_context()
    if span_context.trace_id:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    else:
        event_dict["trace_id"] = _NO_TRACE
        event_dict["span_id"] = _NO_SPAN
    return event_dict


def _shared_processors(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_user_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | None = None,
    user_id: str | None = None,
) -> None:
    """Route all dayflow logging through structlog.

    *fmt* is ``"text"`` for the console renderer or ``"json"`` for JSON lines.
    *log_file*, when given, receives a JSON-lines copy of every DEBUG-and-up
    record. Calling this again replaces the handlers from the previous call.
    """
    if user_id:
        set_user_context(user_id)

    if fmt == "json":
        processors = _shared_processors("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        processors = _shared_processors("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_formatter(renderer, processors))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(stderr_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            _formatter(structlog.processors.JSONRenderer(), _shared_processors("iso"))
        )
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
