"""Structured JSON logging for the loyalty engine.

Identifiers bound through ``loyalty_context`` (operation, customer, segment,
ledger entry, job) are grouped under a ``context`` key on every record, next
to the trace and span ids of the active OpenTelemetry span.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from loguru import logger
from opentelemetry import trace

CONTEXT_KEYS = ("operation", "customer_id", "segment_id", "entry_id", "job_id")

_NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "apscheduler", "celery")
_LOG_RECORD_FIELDS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class StdlibBridge(logging.Handler):
    """Forward stdlib records (SQLAlchemy, Celery, APScheduler) to loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # point loguru at the frame that called into stdlib logging
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        fields = {key: value for key, value in record.__dict__.items() if key not in _LOG_RECORD_FIELDS}
        logger.bind(stdlib_logger=record.name, **fields).opt(depth=depth, exception=record.exc_info).log(
            level, "{}", record.getMessage()
        )


@contextmanager
def loyalty_context(**identifiers: Any) -> Iterator[None]:
    """Attach loyalty identifiers to every record logged inside the block."""

    bound = {key: str(value) for key, value in identifiers.items() if value is not None}
    with logger.contextualize(**bound):
        yield


def render_record(record: dict[str, Any], metadata: dict[str, str]) -> dict[str, Any]:
    extra = dict(record["extra"])
    payload: dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **metadata,
    }

    context = {key: extra.pop(key) for key in CONTEXT_KEYS if key in extra}
    if context:
        payload["context"] = context

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    payload.update(extra)

    exception = record["exception"]
    if exception is not None:
        payload["exception"] = {
            "type": exception.type.__name__ if exception.type else None,
            "message": str(exception.value),
        }
    return payload


def _json_sink(metadata: dict[str, str]) -> Callable[[Any], None]:
    def write(message: Any) -> None:
        sys.stdout.write(json.dumps(render_record(message.record, metadata), default=str) + "\n")

    return write


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Route loguru and stdlib logging to one JSON stream on stdout."""

    metadata = {"service": service_name, "environment": environment, "version": version}
    logger.remove()
    logger.add(_json_sink(metadata), level=level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[StdlibBridge()], level=0, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["CONTEXT_KEYS", "StdlibBridge", "configure_logging", "loyalty_context", "render_record"]
