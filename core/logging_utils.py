from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from .paths import get_logs_dir, resolve_working_dir

__all__ = ["JsonLogFormatter", "configure_json_logging", "redact_secret"]

# Attributes every LogRecord has; anything else came in through ``extra=``.
_RECORD_FIELDS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key, value in vars(record).items():
            if key in _RECORD_FIELDS or key.startswith("_") or key in payload:
                continue
            payload[key] = value
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_json_logging(
    name: str = "symptomlog",
    working_dir: Optional[Path] = None,
    *,
    level: int = logging.INFO,
    max_bytes: int = 2 * 1024 * 1024,
    backups: int = 3,
) -> logging.Logger:
    """Attach one rotating JSON-lines file handler to ``name``; repeated calls reuse it."""

    logs_dir = get_logs_dir(working_dir or resolve_working_dir())
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = str(logs_dir / f"{name}.log.jsonl")
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not any(getattr(handler, "baseFilename", None) == log_path for handler in logger.handlers):
        handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
        handler.setFormatter(JsonLogFormatter())
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def redact_secret(value: str | None) -> str:
    if not value:
        return ""
    if len(value) <= 6:
        return "***"
    return f"{value[:3]}***{value[-2:]}"
