"""Logging setup for the billing service.

Records emitted while a billing cycle runs carry the cycle's correlation id,
held in a ``contextvars.ContextVar`` so it follows the code without being
threaded through every call.
"""

from __future__ import annotations

import contextvars
import json
import logging
import logging.config
from contextlib import contextmanager
from datetime import UTC, datetime

_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


def get_correlation_id() -> str:
    """Return the correlation id bound to the current context (or empty string)."""
    return _correlation_id_var.get()


@contextmanager
def bind_correlation_id(correlation_id: str):
    token = _correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id_var.reset(token)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id() or None
        return True


class JSONLogFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    _EXTRA_FIELDS = ("correlation_id", "phase", "period", "entity_id", "run_id")

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "@timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in self._EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": self.formatException(record.exc_info),
            }
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    formatter = "json" if json_output else "plain"
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"correlation": {"()": CorrelationIdFilter}},
            "formatters": {
                "json": {"()": JSONLogFormatter},
                "plain": {
                    "format": "%(asctime)s %(levelname)s %(name)s "
                    "[%(correlation_id)s] %(message)s"
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": formatter,
                    "filters": ["correlation"],
                }
            },
            "root": {"level": level.upper(), "handlers": ["console"]},
        }
    )
