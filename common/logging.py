from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

# Extra attributes copied from the record into structured output.
_EXTRA_KEYS = ("service", "loan_id", "token", "job_id", "cycle_id")


class JsonFormatter(logging.Formatter):
    """A minimal JSON formatter for structured logs."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for key in _EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        return json.dumps(payload, separators=(",", ":"), default=str)


class ServiceFilter(logging.Filter):
    """Stamp every record with the emitting service name."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "service", None) is None:
            record.service = self.service_name
        return True


def configure_logging(fmt: str | None = None, *, service_name: str | None = None) -> None:
    """Configure root logger with plain text or JSON output.

    Args:
        fmt: 'json' or 'text'. Defaults to LOG_FORMAT env or 'text'.
        service_name: optional service label to inject into every log line.
    """

    fmt = (fmt or os.getenv("LOG_FORMAT", "text")).lower()
    root = logging.getLogger()
    root.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

    # Clear default handlers (uvicorn/gunicorn install their own).
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")
        )
    if service_name:
        handler.addFilter(ServiceFilter(service_name))
    root.addHandler(handler)
