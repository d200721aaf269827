"""Append-only JSONL journal of backup events."""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List

from core.logging_utils import redact_secret
from core.paths import get_logs_dir

LOGGER = logging.getLogger("symptomlog.backup")

JOURNAL_NAME = "backup.jsonl"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
_SECRET_FIELDS = frozenset({"token", "access_token", "password", "authorization"})


class BackupLogger:
    """Record backup, restore and sync events as one JSON object per line.

    Every entry carries ``ts``, ``level``, ``event`` and ``ok`` plus the
    caller's fields, and is mirrored to the ``symptomlog.backup`` logger.
    The journal rolls over to ``backup.jsonl.1`` once it passes ``max_bytes``.
    """

    def __init__(self, working_dir: Path, *, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self._path = get_logs_dir(Path(working_dir)) / JOURNAL_NAME
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._max_bytes = int(max_bytes)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    def _roll_over(self) -> None:
        try:
            size = self._path.stat().st_size
        except FileNotFoundError:
            return
        if self._max_bytes > 0 and size >= self._max_bytes:
            os.replace(self._path, self._path.with_name(self._path.name + ".1"))

    def _record(self, level: int, event: str, ok: bool, fields: Dict[str, Any]) -> None:
        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": logging.getLevelName(level).lower(),
            "event": event,
        }
        for key, value in fields.items():
            entry[key] = redact_secret(str(value)) if key.lower() in _SECRET_FIELDS and value else value
        entry["ok"] = bool(ok)
        line = json.dumps(entry, sort_keys=True, default=str)
        with self._lock:
            self._roll_over()
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        LOGGER.log(level, "%s %s", event, line)

    def event(self, *, event: str, phase: str, ok: bool, **extra: Any) -> None:
        """Outcome of a whole operation; failures are logged at ERROR."""

        self._record(logging.INFO if ok else logging.ERROR, event, ok, {"phase": phase, **extra})

    def info(self, event: str, **extra: Any) -> None:
        self._record(logging.INFO, event, True, extra)

    def warning(self, event: str, **extra: Any) -> None:
        self._record(logging.WARNING, event, False, extra)

    def error(self, event: str, **extra: Any) -> None:
        self._record(logging.ERROR, event, False, extra)

    # ------------------------------------------------------------------
    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Newest-last tail of the journal; unparsable lines are skipped."""

        if limit <= 0:
            return []
        try:
            with self._lock:
                lines = self._path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        entries: List[Dict[str, Any]] = []
        for line in lines[-int(limit):]:
            try:
                parsed = json.loads(line)
            except ValueError:
                continue
            if isinstance(parsed, dict):
                entries.append(parsed)
        return entries


__all__ = ["BackupLogger", "JOURNAL_NAME"]
