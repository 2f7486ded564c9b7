"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Services attach context
through ``extra={...}`` or a :class:`ProcessLogAdapter` bound to one process
instance. Correlation ids (:data:`CORRELATION_KEYS`) are lifted to the top of
each JSON line so a single instance can be followed across both services; all
other context ends up under ``"extra"``.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping, MutableMapping
from datetime import UTC, datetime
from typing import Any

_RESERVED_LOG_RECORD_ATTRS: set[str] = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}

CORRELATION_KEYS: tuple[str, ...] = (
    "process_instance_id",
    "parent_instance_id",
    "child_instance_id",
    "task_id",
    "transaction_id",
)


class JsonFormatter(logging.Formatter):
    """JSON formatter that surfaces process correlation ids."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_ATTRS or key.startswith("_"):
                continue
            if key in CORRELATION_KEYS:
                if value is not None:
                    payload[key] = value
            else:
                extra[key] = value
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # Task results and witnesses may carry values json cannot encode natively.
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str) -> None:
    """Configure root logging with structured JSON output."""

    root = logging.getLogger()

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)
    root.setLevel(level.upper())

    # asyncio debug chatter is rarely useful next to process logs.
    logging.getLogger("asyncio").setLevel(max(root.level, logging.WARNING))


class ProcessLogAdapter(logging.LoggerAdapter):
    """Logger bound to the ids of one process instance (or task).

    Bound context is merged under every call's own ``extra``; per-call keys
    win on conflict.
    """

    def __init__(self, logger: logging.Logger, context: Mapping[str, Any]) -> None:
        super().__init__(logger, dict(context))

    def bind(self, **context: Any) -> ProcessLogAdapter:
        return ProcessLogAdapter(self.logger, {**self.extra, **context})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def bind_logger(logger: logging.Logger, **context: Any) -> ProcessLogAdapter:
    return ProcessLogAdapter(logger, context)
