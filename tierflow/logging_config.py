"""Structured logging for hosts running the engine.

Engine modules only call ``logging.getLogger(__name__)``; the host calls
``setup_logging()`` once. Every record carries the correlation id of the
request or sweep that produced it and the deliberation being worked on,
which ``cells.load_deliberation`` binds for each engine entry point.

Environment Variables:
    LOG_FORMAT: "json" for one JSON object per line, anything else for text.
    LOG_LEVEL: DEBUG, INFO, WARNING or ERROR. Defaults to INFO.
"""

import copy
import logging
import os
import sys
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger import jsonlogger

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_deliberation_id: ContextVar[int | None] = ContextVar("deliberation_id", default=None)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    """Tag records from this context with a request or sweep id."""
    _correlation_id.set(correlation_id)


def get_deliberation_id() -> int | None:
    return _deliberation_id.get()


def set_deliberation_id(deliberation_id: int | None) -> None:
    """Bind a deliberation ID to log records emitted in this context."""
    _deliberation_id.set(deliberation_id)


def context_fields() -> dict[str, Any]:
    """The context values set in this task, omitting unset ones."""
    fields: dict[str, Any] = {}
    correlation_id = get_correlation_id()
    if correlation_id:
        fields["correlation_id"] = correlation_id
    deliberation_id = get_deliberation_id()
    if deliberation_id is not None:
        fields["deliberation_id"] = deliberation_id
    return fields


class ContextAwareJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per record with level, logger and context fields."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.update(
            timestamp=self.formatTime(record, self.datefmt),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
        )
        log_record.update(context_fields())
        if hasattr(record, "extra_fields"):
            log_record.update(record.extra_fields)


class ContextAwareFormatter(logging.Formatter):
    """Text formatter prefixing ``[corr8] [delib:N]`` to each message."""

    def format(self, record: logging.LogRecord) -> str:
        fields = context_fields()
        prefix = []
        if "correlation_id" in fields:
            prefix.append(f"[{fields['correlation_id'][:8]}]")
        if "deliberation_id" in fields:
            prefix.append(f"[delib:{fields['deliberation_id']}]")
        if not prefix:
            return super().format(record)

        # Work on a copy so other handlers see the record unchanged
        record = copy.copy(record)
        record.msg = f"{' '.join(prefix)} {record.getMessage()}"
        record.args = ()
        return super().format(record)


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure the root logger for the host process.

    Args:
        level: Overrides LOG_LEVEL
        log_format: Overrides LOG_FORMAT ("json" or text)
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    use_json = (log_format or os.getenv("LOG_FORMAT", "")).lower() == "json"
    numeric_level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if use_json:
        handler.setFormatter(
            ContextAwareJsonFormatter(
                fmt="%(timestamp)s %(level)s %(logger)s %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S%z",
            )
        )
    else:
        handler.setFormatter(
            ContextAwareFormatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root_logger.addHandler(handler)

    # SQL echo stays off unless explicitly requested
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured. Format: %s, Level: %s", "json" if use_json else "text", level_name
    )
