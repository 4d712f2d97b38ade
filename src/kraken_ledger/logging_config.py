"""Structured logging configuration helpers for the ledger service."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import IO, Any, Dict

DEFAULT_ENV = os.getenv("KRAKEN_LEDGER_ENV", os.getenv("ENV", "local"))
QUIET_LOGGERS = ("urllib3",)

_RESERVED_ATTRS = {
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


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Fields from the logging ``extra`` dictionary are carried through so callers
    can attach contextual identifiers (``event``, ``asset``, ``pair``,
    ``sync_mode``, ``offset``) without them being dropped. The ``event`` field
    is a short machine-readable label downstream tooling can alert on.
    """

    def __init__(self, env: str | None = None) -> None:
        super().__init__()
        self.env = env or DEFAULT_ENV

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        log_time = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": log_time.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "event": getattr(record, "event", None),
            "env": getattr(record, "env", self.env),
            "sync_mode": getattr(record, "sync_mode", None),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            payload.setdefault(key, value)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(
    level: int = logging.INFO, env: str | None = None, stream: IO[str] | None = None
) -> None:
    """Route every log record through one JSON handler (stderr unless ``stream`` is given).

    Per-request debug output from ``urllib3`` is capped at WARNING so verbose
    runs stay readable while the sync loop pages through history.
    """

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter(env=env))
    root_logger.addHandler(handler)

    for noisy in QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


def structured_log_extra(
    *,
    env: str | None = None,
    event: str | None = None,
    sync_mode: str | None = None,
    pair: str | None = None,
    asset: str | None = None,
    trade_id: str | None = None,
    **kwargs: Any,
) -> Dict[str, Any]:
    """Build a consistent set of logging extras with common fields.

    ``event`` should be a short, stable identifier for the log line. The
    optional identifiers (``pair``, ``asset``, ``trade_id``) are only present
    in the result when provided. Additional custom fields are preserved via
    ``**kwargs``.
    """

    extra: Dict[str, Any] = {
        "event": kwargs.pop("event", event),
        "env": env or DEFAULT_ENV,
        "sync_mode": kwargs.pop("sync_mode", sync_mode),
    }

    identifier_fields = {
        "pair": kwargs.pop("pair", pair),
        "asset": kwargs.pop("asset", asset),
        "trade_id": kwargs.pop("trade_id", trade_id),
    }
    for key, value in identifier_fields.items():
        if value is not None:
            extra[key] = value

    extra.update(kwargs)
    return extra


def get_log_environment() -> str:
    """Expose the configured environment for downstream helpers."""

    return DEFAULT_ENV


__all__: list[str] = [
    "JsonFormatter",
    "configure_logging",
    "structured_log_extra",
    "get_log_environment",
]
