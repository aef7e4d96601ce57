"""Logging setup for the API process and background workflows.

Context such as workflow name, invocation id or failure kind is passed with
``logger.info(..., extra={...})``; the JSON formatter lifts those fields to
top-level keys so log processors can index them.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from jobstream.config import Settings, settings as default_settings

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plain text with any structured context appended as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {
            k: v for k, v in record.__dict__.items()
            if k not in _RESERVED and not k.startswith("_")
        }
        if extras:
            line += " | " + " ".join(f"{k}={v}" for k, v in sorted(extras.items()))
        return line


def setup_logging(settings: Settings | None = None) -> None:
    """Configure the root logger from settings.

    Safe to call more than once; previously installed handlers are replaced.
    """
    settings = settings or default_settings
    cfg = settings.logging

    if cfg.format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = ContextTextFormatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if cfg.file:
        handlers.append(logging.FileHandler(cfg.file, encoding="utf-8"))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(cfg.level.upper())

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    if not settings.db.echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
