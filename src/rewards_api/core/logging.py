from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


_STDLIB_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }
)

# Third-party loggers that flood the bot output at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "telegram", "uvicorn.access")


class InterceptHandler(logging.Handler):
    """Route stdlib logging records (uvicorn, python-telegram-bot, redis) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - malformed format strings
            message = record.msg if isinstance(record.msg, str) else str(record.msg)

        extra = {key: value for key, value in record.__dict__.items() if key not in _STDLIB_RECORD_ATTRS}
        escaped = message.replace("{", "{{").replace("}", "}}")

        bound = logger.bind(**extra) if extra else logger
        bound.opt(depth=6, exception=record.exc_info).log(level, escaped)


def _write_json(message: "logger.Message", metadata: Dict[str, Any]) -> None:
    record = message.record
    span_context = trace.get_current_span().get_span_context()

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        "service": metadata["service_name"],
        "environment": metadata["environment"],
        "version": metadata["version"],
    }
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"
    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)
    if record["extra"]:
        payload.update(record["extra"])

    sys.stdout.write(json.dumps(payload, default=str) + "\n")


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Install the JSON Loguru sink and bridge stdlib logging into it."""

    logger.remove()
    metadata = {"service_name": service_name, "environment": environment, "version": version}
    if environment == "development":
        logger.add(sys.stderr, level=level, backtrace=False, diagnose=False)
    else:
        logger.add(lambda message: _write_json(message, metadata), level=level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
