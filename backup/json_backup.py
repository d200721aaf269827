"""JSON exports of the store: validation and a short preview.

A JSON backup holds rows rather than a file image::

    {"version": 3, "timestamp": "2025-01-01T00:00:00Z",
     "tables": {"symptoms": [{"name": "bloating", "intensity": 4}]}}

Restoring one merges the rows into the live store instead of replacing it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from .errors import JsonBackupError, JsonVersionError

PREVIEW_ITEMS = 3
JSON_SOURCE_NAME = "json_restore.json"


class JsonBackup(BaseModel):
    version: int
    timestamp: str = ""
    tables: Dict[str, List[Dict[str, Any]]]

    @property
    def row_count(self) -> int:
        return sum(len(rows) for rows in self.tables.values())


@dataclass(slots=True)
class JsonBackupPreview:
    version: Optional[int] = None
    timestamp: str = ""
    counts: Dict[str, int] = field(default_factory=dict)
    samples: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def summary(self) -> str:
        if self.error:
            return f"Unable to preview backup: {self.error}"
        lines = ["Backup contains:"]
        lines.extend(f"- {count} {table}" for table, count in self.counts.items())
        for table, rows in self.samples.items():
            if not rows:
                continue
            lines.append("")
            lines.append(f"First {table}:")
            for row in rows:
                lines.append("- " + ", ".join(f"{key}={value}" for key, value in row.items()))
        return "\n".join(lines)


def _load(content: str | bytes) -> JsonBackup:
    try:
        return JsonBackup.model_validate_json(content)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'document'}: {error['msg']}"
            for error in exc.errors()[:3]
        )
        raise JsonBackupError(f"not a valid JSON backup ({problems})") from exc


def parse_json_backup(content: str | bytes, current_version: int) -> JsonBackup:
    """Validate ``content``; only exports of ``current_version`` are accepted."""

    backup = _load(content)
    if backup.version != int(current_version):
        raise JsonVersionError(
            f"JSON backup is v{backup.version}, the store is v{int(current_version)}"
        )
    return backup


def preview_json_backup(content: str | bytes, max_items: int = PREVIEW_ITEMS) -> JsonBackupPreview:
    try:
        backup = _load(content)
    except JsonBackupError as exc:
        return JsonBackupPreview(error=str(exc))
    limit = max(int(max_items), 0)
    return JsonBackupPreview(
        version=backup.version,
        timestamp=backup.timestamp,
        counts={table: len(rows) for table, rows in backup.tables.items()},
        samples={table: rows[:limit] for table, rows in backup.tables.items()},
    )


__all__ = [
    "JSON_SOURCE_NAME",
    "JsonBackup",
    "JsonBackupPreview",
    "PREVIEW_ITEMS",
    "parse_json_backup",
    "preview_json_backup",
]
