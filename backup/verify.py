"""Content hashing and integrity checks for snapshots."""
from __future__ import annotations

import hashlib
import os
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

from .errors import BackupVerificationError
from .naming import checksum_name
from .types import Snapshot

_CHUNK_SIZE = 1024 * 1024
_DIGEST_LENGTH = 64

_cache_lock = threading.Lock()
_verified: Dict[Tuple[str, int, int], str] = {}


def digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def digest_file(path: Path) -> str:
    hasher = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def copy_with_digest(source: Path, dest: Path) -> str:
    """Copy ``source`` to ``dest`` and hash the bytes in the same pass."""

    hasher = hashlib.sha256()
    with Path(source).open("rb") as src, Path(dest).open("wb") as dst:
        for chunk in iter(lambda: src.read(_CHUNK_SIZE), b""):
            dst.write(chunk)
            hasher.update(chunk)
        dst.flush()
        os.fsync(dst.fileno())
    return hasher.hexdigest()


def is_valid_digest(value: str) -> bool:
    if len(value) != _DIGEST_LENGTH:
        return False
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


def companion_path(snapshot_path: Path) -> Path:
    snapshot_path = Path(snapshot_path)
    return snapshot_path.with_name(checksum_name(snapshot_path.name))


def write_companion(snapshot_path: Path, value: str) -> Path:
    if not is_valid_digest(value):
        raise BackupVerificationError(f"refusing to record malformed digest {value!r}")
    target = companion_path(snapshot_path)
    tmp_path = target.with_name(target.name + ".partial")
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(f"{value.lower()}  {Path(snapshot_path).name}\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, target)
    return target


def parse_companion(text: str) -> Optional[str]:
    parts = text.strip().split()
    if not parts:
        return None
    value = parts[0].lower()
    return value if is_valid_digest(value) else None


def read_companion(snapshot_path: Path) -> Optional[str]:
    try:
        text = companion_path(snapshot_path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return parse_companion(text)


def _stat_key(path: Path) -> Tuple[str, int, int]:
    stat = path.stat()
    return (str(path.resolve()), int(stat.st_size), int(stat.st_mtime_ns))


def verify_path(path: Path, expected: str, *, strict: bool = False) -> bool:
    """Return ``True`` when the bytes at ``path`` hash to ``expected``.

    Non-strict checks may be answered from a cache keyed by path, size and
    mtime; ``strict`` always re-reads the file. A missing file is simply not
    valid; every other I/O error propagates.
    """

    path = Path(path)
    expected = (expected or "").lower()
    if not is_valid_digest(expected):
        return False
    try:
        key = _stat_key(path)
    except FileNotFoundError:
        return False
    if not strict:
        with _cache_lock:
            cached = _verified.get(key)
        if cached is not None:
            return cached == expected
    try:
        actual = digest_file(path)
    except FileNotFoundError:
        return False
    with _cache_lock:
        _verified[key] = actual
    return actual == expected


def verify(snapshot: Snapshot, expected: Optional[str] = None, *, strict: bool = False) -> bool:
    if snapshot.path is None:
        return False
    return verify_path(snapshot.path, expected if expected is not None else snapshot.checksum, strict=strict)


def clear_cache() -> None:
    with _cache_lock:
        _verified.clear()


__all__ = [
    "clear_cache",
    "companion_path",
    "copy_with_digest",
    "digest",
    "digest_file",
    "is_valid_digest",
    "parse_companion",
    "read_companion",
    "verify",
    "verify_path",
    "write_companion",
]
