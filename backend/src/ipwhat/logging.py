"""Structured logging configuration for IP What.

Two kinds of work carry a correlation ID: HTTP requests (taken from the
client's header or generated) and monitoring cycles (generated per cycle and
prefixed with ``cycle-``). Log lines emitted by probes, the history store and
the notifier inherit the ID of whichever piece of work they belong to.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

from .config import get_settings

correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosqlite")


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> str | None:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str | None = None) -> str:
    """Bind ``cid`` (or a fresh short ID) to the current context."""
    cid = cid or _short_id()
    correlation_id_ctx.set(cid)
    return cid


def new_cycle_id() -> str:
    """Bind a fresh ID for one monitoring cycle.

    Cycles run in their own task, so the binding never leaks into the
    request that triggered them.
    """
    return set_correlation_id(f"cycle-{_short_id()}")


def add_correlation_id(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    cid = correlation_id_ctx.get()
    if cid is not None:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _build_processors(log_format: str, with_correlation: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if with_correlation:
        processors.append(add_correlation_id)
    processors += [
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors += [structlog.processors.UnicodeDecoder(), structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure structlog once at startup; arguments override the LOG_ settings."""
    settings = get_settings().logging
    level = level or settings.level
    log_format = log_format or settings.format

    structlog.configure(
        processors=_build_processors(log_format, settings.correlation_id),
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route stdlib records (uvicorn, httpx) to stdout at the same level
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=logging.getLevelName(level))
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None, **context: Any) -> structlog.BoundLogger:
    """Get a structured logger, optionally bound to a component name and context."""
    logger = structlog.get_logger()
    if name:
        context["logger_name"] = name
    return logger.bind(**context) if context else logger
