"""Create, enumerate and delete local snapshots of the live store."""
from __future__ import annotations

import os
import shutil
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Collection, Iterator, List, Optional, Set, Tuple

from core.db import SQLITE_HEADER_MAGIC, SQLiteStore, read_user_version

from .errors import (
    BackupVerificationError,
    CheckpointError,
    InsufficientStorageError,
    SnapshotCopyError,
    StoreLockedError,
)
from .logs import BackupLogger
from .naming import SNAPSHOT_SUFFIX, next_free_name, parse_name
from .retention import SAFETY_KEEP, RetentionPolicy, apply_retention, order_newest_first
from .types import (
    BackupFailure,
    BackupFailureKind,
    BackupOutcome,
    BackupSuccess,
    RetentionSummary,
    Snapshot,
    SnapshotLocation,
    SnapshotStatus,
)
from .verify import companion_path, copy_with_digest, read_companion, verify_path, write_companion

SOFT_DEADLINE_MS = 200
STORAGE_SAFETY_FACTOR = 2
_TRASH_MARKER = ".deleting-"
_PARTIAL_SUFFIX = ".partial"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _disk_free(path: Path) -> int:
    return shutil.disk_usage(path).free


def _is_lock_error(exc: sqlite3.Error) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


class LocalBackupManager:
    """Produce consistent, checksum-verified on-device snapshots."""

    def __init__(
        self,
        store: SQLiteStore,
        backups_dir: Path,
        *,
        logger: BackupLogger,
        safety_dir: Optional[Path] = None,
        policy: Optional[RetentionPolicy] = None,
        safety_policy: Optional[RetentionPolicy] = None,
        disk_free: Callable[[Path], int] = _disk_free,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
        lock_attempts: int = 3,
        lock_backoff_s: float = 0.05,
    ) -> None:
        self._store = store
        self._dir = Path(backups_dir)
        self._safety_dir = Path(safety_dir) if safety_dir else self._dir / "safety"
        self._logger = logger
        self._policy = policy or RetentionPolicy()
        self._safety_policy = safety_policy or RetentionPolicy(keep=SAFETY_KEEP)
        self._disk_free = disk_free
        self._clock = clock
        self._sleep = sleep
        self._lock_attempts = max(int(lock_attempts), 1)
        self._lock_backoff_s = float(lock_backoff_s)
        self._name_lock = threading.Lock()
        self._held_lock = threading.Lock()
        self._held: Set[str] = set()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._safety_dir.mkdir(parents=True, exist_ok=True)
        self._sweep_stale()

    # ------------------------------------------------------------------
    @property
    def backups_dir(self) -> Path:
        return self._dir

    @property
    def safety_dir(self) -> Path:
        return self._safety_dir

    @property
    def store(self) -> SQLiteStore:
        return self._store

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        """Keep ``name`` out of retention for the duration of the block."""

        with self._held_lock:
            self._held.add(name)
        try:
            yield
        finally:
            with self._held_lock:
                self._held.discard(name)

    def held_names(self) -> Set[str]:
        with self._held_lock:
            return set(self._held)

    def _sweep_stale(self) -> None:
        for directory in (self._dir, self._safety_dir):
            for child in directory.iterdir():
                if not child.is_file():
                    continue
                if child.name.endswith(_PARTIAL_SUFFIX) or _TRASH_MARKER in child.name:
                    child.unlink(missing_ok=True)
                    self._logger.warning("stale_file_removed", path=str(child))

    # ------------------------------------------------------------------
    def create_local_backup(self, *, label: Optional[str] = None, safety: bool = False) -> BackupOutcome:
        start = time.monotonic()
        try:
            snapshot = self._create(label=label, safety=safety, start=start)
        except InsufficientStorageError as exc:
            return self._failure(BackupFailureKind.STORAGE_FULL, str(exc), exc)
        except StoreLockedError as exc:
            return self._failure(BackupFailureKind.STORE_LOCKED, str(exc), exc)
        except CheckpointError as exc:
            return self._failure(BackupFailureKind.CHECKPOINT_FAILED, str(exc), exc)
        except SnapshotCopyError as exc:
            return self._failure(BackupFailureKind.COPY_FAILED, str(exc), exc)
        except BackupVerificationError as exc:
            return self._failure(BackupFailureKind.CHECKSUM_MISMATCH, str(exc), exc)
        except Exception as exc:
            return self._failure(BackupFailureKind.UNKNOWN, f"Unexpected error during backup: {exc}", exc)

        if safety:
            self._prune(self._safety_dir, self._safety_policy, phase="safety_retention")
        else:
            self._prune(self._dir, self._policy, phase="retention")
        duration_ms = int((time.monotonic() - start) * 1000)
        self._logger.event(
            event="backup_complete",
            phase="create",
            ok=True,
            id=snapshot.name,
            size=snapshot.size_bytes,
            safety=safety,
            duration_ms=duration_ms,
        )
        return BackupSuccess(snapshot=snapshot, duration_ms=duration_ms)

    def _failure(self, kind: BackupFailureKind, message: str, cause: Optional[BaseException]) -> BackupFailure:
        self._logger.event(event="backup_failed", phase="create", ok=False, kind=kind.value, error=message)
        return BackupFailure(kind=kind, message=message, cause=cause)

    def _create(self, *, label: Optional[str], safety: bool, start: float) -> Snapshot:
        directory = self._safety_dir if safety else self._dir
        source = self._store.path
        if not source.exists():
            raise SnapshotCopyError(f"Source database file not found: {source}")

        store_size = self._store.size_bytes()
        free = self._disk_free(directory)
        if free < STORAGE_SAFETY_FACTOR * store_size:
            raise InsufficientStorageError(
                f"Insufficient storage space: {free} bytes free, {STORAGE_SAFETY_FACTOR * store_size} required"
            )

        self._checkpoint()

        schema_version = self._store.current_schema_version
        with self._name_lock:
            created = self._clock()
            existing = [child.name for child in directory.iterdir()]
            name = next_free_name(schema_version, created, existing, label=label)
            target = directory / name
            partial = target.with_name(target.name + _PARTIAL_SUFFIX)
            self._logger.info("copy_store", source=str(source), dest=str(target))
            try:
                checksum = copy_with_digest(source, partial)
                os.replace(partial, target)
            except OSError as exc:
                partial.unlink(missing_ok=True)
                raise SnapshotCopyError(f"Failed to copy database file: {exc}") from exc

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if elapsed_ms > SOFT_DEADLINE_MS:
            self._logger.warning("soft_deadline_exceeded", id=name, elapsed_ms=elapsed_ms)

        write_companion(target, checksum)
        if not verify_path(target, checksum, strict=True):
            target.unlink(missing_ok=True)
            companion_path(target).unlink(missing_ok=True)
            raise BackupVerificationError(f"checksum mismatch right after copying {name}")

        parsed = parse_name(name)
        return Snapshot(
            name=name,
            location=SnapshotLocation.LOCAL,
            created=parsed.created if parsed else created,
            size_bytes=target.stat().st_size,
            schema_version=schema_version,
            checksum=checksum,
            path=target,
            sequence=parsed.sequence if parsed else 0,
            label=parsed.label if parsed else None,
            safety=safety,
        )

    def _checkpoint(self) -> None:
        last_error: Optional[BaseException] = None
        for attempt in range(self._lock_attempts):
            try:
                busy, _, _ = self._store.checkpoint()
            except sqlite3.OperationalError as exc:
                if not _is_lock_error(exc):
                    raise CheckpointError(f"WAL checkpoint failed: {exc}") from exc
                busy = 1
                last_error = exc
            except sqlite3.Error as exc:
                raise CheckpointError(f"WAL checkpoint failed: {exc}") from exc
            if not busy:
                return
            self._logger.warning("checkpoint_busy", attempt=attempt + 1)
            if attempt + 1 < self._lock_attempts:
                self._sleep(self._lock_backoff_s * (2 ** attempt))
        raise StoreLockedError(
            f"Store stayed locked after {self._lock_attempts} checkpoint attempts"
        ) from last_error

    # ------------------------------------------------------------------
    def import_snapshot(self, source: Path, *, schema_version: Optional[int] = None) -> BackupOutcome:
        """Copy an external SQLite file into the local rotation."""

        start = time.monotonic()
        source = Path(source)
        try:
            with source.open("rb") as handle:
                header = handle.read(len(SQLITE_HEADER_MAGIC))
        except OSError as exc:
            return self._failure(BackupFailureKind.COPY_FAILED, f"Failed to read {source}: {exc}", exc)
        if header != SQLITE_HEADER_MAGIC:
            return self._failure(BackupFailureKind.COPY_FAILED, f"{source} is not a SQLite database", None)

        try:
            version = int(schema_version) if schema_version is not None else read_user_version(source)
            with self._name_lock:
                created = self._clock()
                existing = [child.name for child in self._dir.iterdir()]
                name = next_free_name(version, created, existing, label="imported")
                target = self._dir / name
                partial = target.with_name(target.name + _PARTIAL_SUFFIX)
                try:
                    checksum = copy_with_digest(source, partial)
                    os.replace(partial, target)
                except OSError as exc:
                    partial.unlink(missing_ok=True)
                    raise SnapshotCopyError(f"Failed to import {source}: {exc}") from exc
            write_companion(target, checksum)
        except SnapshotCopyError as exc:
            return self._failure(BackupFailureKind.COPY_FAILED, str(exc), exc)
        except Exception as exc:
            return self._failure(BackupFailureKind.UNKNOWN, f"Import failed: {exc}", exc)

        snapshot = self.load_snapshot(target)
        self._prune(self._dir, self._policy, phase="retention")
        duration_ms = int((time.monotonic() - start) * 1000)
        self._logger.event(event="backup_imported", phase="import", ok=True, id=name, source=str(source))
        return BackupSuccess(snapshot=snapshot, duration_ms=duration_ms)

    # ------------------------------------------------------------------
    def load_snapshot(self, path: Path, *, verify: bool = False, safety: bool = False) -> Optional[Snapshot]:
        path = Path(path)
        parsed = parse_name(path.name)
        if parsed is None or not path.is_file():
            return None
        checksum = read_companion(path) or ""
        status = SnapshotStatus.AVAILABLE
        if not checksum:
            status = SnapshotStatus.CORRUPTED
        elif verify and not verify_path(path, checksum):
            status = SnapshotStatus.CORRUPTED
        return Snapshot(
            name=path.name,
            location=SnapshotLocation.LOCAL,
            created=parsed.created,
            size_bytes=path.stat().st_size,
            schema_version=parsed.schema_version,
            checksum=checksum,
            status=status,
            path=path,
            sequence=parsed.sequence,
            label=parsed.label,
            safety=safety,
        )

    def list_local_backups(self, *, verify: bool = True, include_corrupted: bool = True) -> List[Snapshot]:
        return self._list(self._dir, verify=verify, include_corrupted=include_corrupted, safety=False)

    def list_safety_snapshots(self) -> List[Snapshot]:
        return self._list(self._safety_dir, verify=False, include_corrupted=True, safety=True)

    def _list(self, directory: Path, *, verify: bool, include_corrupted: bool, safety: bool) -> List[Snapshot]:
        items: List[Snapshot] = []
        if not directory.exists():
            return items
        for child in directory.iterdir():
            if not child.is_file() or not child.name.endswith(SNAPSHOT_SUFFIX):
                continue
            snapshot = self.load_snapshot(child, verify=verify, safety=safety)
            if snapshot is None:
                continue
            if snapshot.status is SnapshotStatus.CORRUPTED:
                self._logger.warning("snapshot_corrupted", id=snapshot.name)
                if not include_corrupted:
                    continue
            items.append(snapshot)
        return order_newest_first(items)

    def storage_usage(self) -> Tuple[int, int]:
        snapshots = self.list_local_backups(verify=False)
        return len(snapshots), sum(snap.size_bytes for snap in snapshots)

    # ------------------------------------------------------------------
    def delete_local_backup(self, snapshot: Snapshot) -> bool:
        """Remove the snapshot and its checksum companion, both or neither."""

        path = snapshot.path or self._dir / snapshot.name
        companion = companion_path(path)
        trash_suffix = f"{_TRASH_MARKER}{uuid.uuid4().hex[:8]}"
        moved: List[Tuple[Path, Path]] = []
        try:
            for original in (path, companion):
                if original.exists():
                    trashed = original.with_name(original.name + trash_suffix)
                    os.replace(original, trashed)
                    moved.append((original, trashed))
        except OSError as exc:
            for original, trashed in reversed(moved):
                os.replace(trashed, original)
            self._logger.error("backup_delete_failed", id=snapshot.name, error=str(exc))
            return False
        if not moved:
            return False
        for _, trashed in moved:
            trashed.unlink(missing_ok=True)
        self._logger.info("backup_deleted", id=snapshot.name)
        return True

    def delete_all_local_backups(self) -> int:
        deleted = 0
        for snapshot in self.list_local_backups(verify=False):
            if snapshot.name in self.held_names():
                continue
            if self.delete_local_backup(snapshot):
                deleted += 1
        return deleted

    # ------------------------------------------------------------------
    def prune(self, *, held: Collection[str] = ()) -> RetentionSummary:
        return self._prune(self._dir, self._policy, phase="retention", held=held)

    def _prune(
        self,
        directory: Path,
        policy: RetentionPolicy,
        *,
        phase: str,
        held: Collection[str] = (),
    ) -> RetentionSummary:
        snapshots = self._list(directory, verify=False, include_corrupted=True, safety=directory == self._safety_dir)
        protected = self.held_names() | set(held)
        try:
            return apply_retention(
                snapshots,
                policy,
                self.delete_local_backup,
                logger=self._logger,
                held=protected,
                phase=phase,
            )
        except OSError as exc:
            self._logger.error("retention_failed", phase=phase, error=str(exc))
            return RetentionSummary(removed=[], kept=[snap.name for snap in snapshots], freed_bytes=0)


__all__ = ["LocalBackupManager", "SOFT_DEADLINE_MS", "STORAGE_SAFETY_FACTOR"]
