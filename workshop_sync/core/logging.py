"""Structured logging configuration using structlog."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import orjson
import structlog
from structlog.types import Processor

from workshop_sync.core.config import settings

# Correlation fields attached to every event of a session
session_id_ctx: ContextVar[str | None] = ContextVar("session_id", default=None)
employee_id_ctx: ContextVar[str | None] = ContextVar("employee_id", default=None)
table_ctx: ContextVar[str | None] = ContextVar("table", default=None)

_CONTEXT_FIELDS: tuple[tuple[str, ContextVar[str | None]], ...] = (
    ("session_id", session_id_ctx),
    ("employee_id", employee_id_ctx),
    ("table", table_ctx),
)

# Per-request transport chatter; failures are logged by the store adapter
_QUIET_LOGGERS = ("httpx", "httpcore")


@contextmanager
def session_context(session_id: str, employee_id: str | None = None) -> Iterator[None]:
    """Tag every event logged inside the block with the session and employee."""
    session_token = session_id_ctx.set(session_id)
    employee_token = employee_id_ctx.set(employee_id)
    try:
        yield
    finally:
        employee_id_ctx.reset(employee_token)
        session_id_ctx.reset(session_token)


@contextmanager
def table_context(table: str) -> Iterator[None]:
    """Tag events logged inside the block with the table being reconciled."""
    token = table_ctx.set(table)
    try:
        yield
    finally:
        table_ctx.reset(token)


def _add_context_vars(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add the session correlation fields that are set.

    Fields passed explicitly to the log call win over the context.
    """
    for key, var in _CONTEXT_FIELDS:
        if (value := var.get()) is not None:
            event_dict.setdefault(key, value)
    return event_dict


def _orjson_serializer(obj: Any, **kwargs: Any) -> str:
    """Serialize log event to JSON using orjson."""
    return orjson.dumps(obj, default=str).decode("utf-8")


def configure_logging() -> None:
    """Configure structlog for the application.

    Development mode: ConsoleRenderer with colors for readability.
    Production mode: JSONRenderer with orjson for structured logging.
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _add_context_vars,
    ]

    log_format = settings.log_format.lower() if settings.log_format else None
    use_json = log_format == "json" or (
        log_format is None and settings.environment != "development"
    )

    if use_json:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.EventRenamer("message"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(serializer=_orjson_serializer),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Configure stdlib logging to route through structlog
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.DEBUG if settings.debug else logging.INFO,
    )
    if not settings.debug:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a configured structlog logger.

    Args:
        name: Optional logger name. Defaults to __name__ of caller.

    Returns:
        Configured structlog bound logger.
    """
    return structlog.get_logger(name)
