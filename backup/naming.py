"""Snapshot file and object naming.

Names sort lexically in creation order:
``symptomlog_v{schema}_{yyyyMMdd}_{HHmmss}[_{NN}][-{label}].snapshot``.
The optional ``_NN`` counter separates snapshots taken within the same second.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

APP_NAME = "symptomlog"
SNAPSHOT_SUFFIX = ".snapshot"
CHECKSUM_SUFFIX = ".sha256"
AUTO_SLOT_NAME = f"{APP_NAME}_auto{SNAPSHOT_SUFFIX}"

_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
_NAME_PATTERN = re.compile(
    r"^(?P<app>[A-Za-z0-9]+)_v(?P<version>\d+)_(?P<stamp>\d{8}_\d{6})"
    r"(?:_(?P<seq>\d{2,}))?(?:-(?P<label>[A-Za-z0-9_-]+))?\.snapshot$"
)
_SAFE_LABEL_PATTERN = re.compile(r"[^A-Za-z0-9_-]+")


@dataclass(frozen=True, slots=True)
class ParsedName:
    schema_version: int
    created: datetime
    sequence: int
    label: Optional[str]


def safe_label(label: str) -> str:
    """Return a filename-safe named-backup suffix."""

    cleaned = _SAFE_LABEL_PATTERN.sub("-", label.strip()).strip("-")
    return cleaned or "named"


def format_name(
    schema_version: int,
    created: datetime,
    *,
    sequence: int = 0,
    label: Optional[str] = None,
    app: str = APP_NAME,
) -> str:
    stamp = created.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)
    name = f"{app}_v{int(schema_version)}_{stamp}"
    if sequence:
        name += f"_{int(sequence):02d}"
    if label:
        name += f"-{safe_label(label)}"
    return name + SNAPSHOT_SUFFIX


def parse_name(name: str) -> Optional[ParsedName]:
    match = _NAME_PATTERN.match(name)
    if not match:
        return None
    try:
        created = datetime.strptime(match.group("stamp"), _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    seq = match.group("seq")
    return ParsedName(
        schema_version=int(match.group("version")),
        created=created,
        sequence=int(seq) if seq else 0,
        label=match.group("label"),
    )


def checksum_name(snapshot_name: str) -> str:
    return snapshot_name + CHECKSUM_SUFFIX


def next_free_name(
    schema_version: int,
    created: datetime,
    existing: Iterable[str],
    *,
    label: Optional[str] = None,
) -> str:
    """Pick the first name for ``created`` not already taken.

    Any snapshot in the same second counts as taken, whatever its schema
    version, so the counter stays monotonic within that second.
    """

    stamp = created.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)
    highest = -1
    for name in existing:
        parsed = parse_name(name)
        if parsed is None:
            continue
        if parsed.created.strftime(_TIMESTAMP_FORMAT) != stamp:
            continue
        highest = max(highest, parsed.sequence)
    return format_name(schema_version, created, sequence=highest + 1, label=label)


__all__ = [
    "APP_NAME",
    "AUTO_SLOT_NAME",
    "CHECKSUM_SUFFIX",
    "ParsedName",
    "SNAPSHOT_SUFFIX",
    "checksum_name",
    "format_name",
    "next_free_name",
    "parse_name",
    "safe_label",
]
