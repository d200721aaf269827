"""Restore snapshots over the live store with automatic rollback."""
from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from core.db import SQLiteStore, read_user_version

from .cloud import CloudBackupStore
from .create import LocalBackupManager
from .errors import (
    BackupRestoreError,
    JsonBackupError,
    JsonVersionError,
    RemoteError,
    RemoteNotFound,
    RemoteTransientError,
)
from .guard import ExclusionGate
from .json_backup import JSON_SOURCE_NAME, parse_json_backup
from .logs import BackupLogger
from .types import (
    BackupFailure,
    RestoreFailure,
    RestoreFailureKind,
    RestoreOutcome,
    RestoreState,
    RestoreSuccess,
    Snapshot,
    SnapshotLocation,
)
from .verify import digest, verify_path

MARKER_NAME = "restore.marker"


def _fsync_copy(source: Path, dest: Path) -> None:
    with source.open("rb") as src, dest.open("wb") as dst:
        for chunk in iter(lambda: src.read(1024 * 1024), b""):
            dst.write(chunk)
        dst.flush()
        os.fsync(dst.fileno())


class RestoreManager:
    """Validate, safety-snapshot, swap and migrate; roll back on any failure."""

    def __init__(
        self,
        store: SQLiteStore,
        local: LocalBackupManager,
        *,
        logger: BackupLogger,
        staging_dir: Path,
        cloud: Optional[CloudBackupStore] = None,
        gate: Optional[ExclusionGate] = None,
    ) -> None:
        self._store = store
        self._local = local
        self._logger = logger
        self._staging_dir = Path(staging_dir)
        self._cloud = cloud
        self._gate = gate or ExclusionGate()
        self._state = RestoreState.IDLE
        self._state_lock = threading.Lock()
        self._marker_path = self._local.backups_dir / MARKER_NAME

    # ------------------------------------------------------------------
    @property
    def state(self) -> RestoreState:
        with self._state_lock:
            return self._state

    @property
    def marker_path(self) -> Path:
        return self._marker_path

    def set_cloud(self, cloud: Optional[CloudBackupStore]) -> None:
        self._cloud = cloud

    def _transition(self, state: RestoreState, **extra: Any) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        self._logger.info("restore_state", previous=previous.value, state=state.value, **extra)

    def is_backup_compatible(self, schema_version: int) -> bool:
        return int(schema_version) <= self._store.current_schema_version

    # ------------------------------------------------------------------
    def restore_from_backup(self, snapshot: Snapshot, *, access_token: Optional[str] = None) -> RestoreOutcome:
        start = time.monotonic()
        self._transition(RestoreState.VALIDATING, id=snapshot.name, location=snapshot.location.value)
        with self._gate.exclusive():
            try:
                outcome = self._restore(snapshot, access_token=access_token, start=start)
            finally:
                if snapshot.location is SnapshotLocation.REMOTE:
                    self._clean_staging()
        if outcome.ok:
            self._transition(RestoreState.DONE, id=snapshot.name)
        else:
            self._transition(RestoreState.FAILED, id=snapshot.name, kind=outcome.kind.value)
        self._transition(RestoreState.IDLE)
        return outcome

    def restore_from_json(self, content: str | bytes, *, source_name: str = JSON_SOURCE_NAME) -> RestoreOutcome:
        """Merge the rows of a JSON export into the live store.

        Nothing is swapped, so no safety snapshot or marker is involved: the
        rows land in a single transaction or not at all.
        """

        start = time.monotonic()
        try:
            backup = parse_json_backup(content, self._store.current_schema_version)
        except JsonVersionError as exc:
            return self._fail(RestoreFailureKind.VERSION_INCOMPATIBLE, str(exc), exc)
        except JsonBackupError as exc:
            return self._fail(RestoreFailureKind.CORRUPTED, f"JSON parsing failed: {exc}", exc)

        with self._gate.exclusive():
            try:
                items = self._store.merge_rows(backup.tables)
            except sqlite3.Error as exc:
                return self._fail(RestoreFailureKind.UNKNOWN, f"JSON restore failed: {exc}", exc)

        raw = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        source = Snapshot(
            name=source_name,
            location=SnapshotLocation.LOCAL,
            created=datetime.now(timezone.utc),
            size_bytes=len(raw),
            schema_version=backup.version,
            checksum=digest(raw),
        )
        duration_ms = int((time.monotonic() - start) * 1000)
        self._logger.event(
            event="json_restored",
            phase="restore",
            ok=True,
            id=source_name,
            items=items,
            tables=sorted(backup.tables),
            duration_ms=duration_ms,
        )
        return RestoreSuccess(items_restored=items, source_snapshot=source, duration_ms=duration_ms)

    def _fail(self, kind: RestoreFailureKind, message: str, cause: Optional[BaseException] = None) -> RestoreFailure:
        self._logger.event(event="restore_failed", phase="restore", ok=False, kind=kind.value, error=message)
        return RestoreFailure(kind=kind, message=message, cause=cause)

    def _restore(self, snapshot: Snapshot, *, access_token: Optional[str], start: float) -> RestoreOutcome:
        try:
            source = self._stage(snapshot, access_token)
        except RemoteNotFound as exc:
            return self._fail(RestoreFailureKind.NOT_FOUND, str(exc), exc)
        except RemoteTransientError as exc:
            kind = RestoreFailureKind.NETWORK_UNAVAILABLE if exc.unreachable else RestoreFailureKind.DOWNLOAD_FAILED
            return self._fail(kind, str(exc), exc)
        except RemoteError as exc:
            return self._fail(RestoreFailureKind.DOWNLOAD_FAILED, str(exc), exc)
        except BackupRestoreError as exc:
            return self._fail(RestoreFailureKind.DOWNLOAD_FAILED, str(exc), exc)
        except Exception as exc:
            return self._fail(RestoreFailureKind.DOWNLOAD_FAILED, f"Download failed: {exc}", exc)

        source_path = Path(source.path) if source.path is not None else None
        try:
            if source_path is None or not source_path.exists():
                return self._fail(RestoreFailureKind.NOT_FOUND, f"Backup file not found: {snapshot.name}")
            if not verify_path(source_path, source.checksum, strict=True):
                return self._fail(RestoreFailureKind.CORRUPTED, "Backup file is corrupted (checksum mismatch)")
        except OSError as exc:
            return self._fail(RestoreFailureKind.UNKNOWN, f"Could not read {snapshot.name}: {exc}", exc)

        if not self.is_backup_compatible(source.schema_version):
            return self._fail(
                RestoreFailureKind.VERSION_INCOMPATIBLE,
                f"Backup schema v{source.schema_version} is newer than supported v{self._store.current_schema_version}",
            )

        self._transition(RestoreState.SAFETY_SNAPSHOTTING, id=snapshot.name)
        safety_outcome = self._local.create_local_backup(safety=True)
        if isinstance(safety_outcome, BackupFailure):
            return self._fail(
                RestoreFailureKind.INTERRUPTED,
                f"Safety snapshot failed: {safety_outcome.message}",
                safety_outcome.cause,
            )
        safety = safety_outcome.snapshot

        with self._local.hold(safety.name):
            self._write_marker(target=source, safety=safety, state=RestoreState.SWAPPING)
            try:
                items = self._apply(source_path, name=source.name)
            except Exception as exc:
                self._logger.error("restore_apply_failed", id=snapshot.name, error=str(exc))
                self._transition(RestoreState.ROLLING_BACK, id=snapshot.name, safety=safety.name)
                if self.rollback_restore(safety):
                    self._clear_marker()
                return self._fail(RestoreFailureKind.INTERRUPTED, f"Restore interrupted: {exc}", exc)
            self._clear_marker()

        duration_ms = int((time.monotonic() - start) * 1000)
        self._logger.event(
            event="backup_restored",
            phase="restore",
            ok=True,
            id=snapshot.name,
            items=items,
            safety=safety.name,
            duration_ms=duration_ms,
        )
        return RestoreSuccess(items_restored=items, source_snapshot=snapshot, duration_ms=duration_ms)

    def _clean_staging(self) -> None:
        if not self._staging_dir.exists():
            return
        for child in self._staging_dir.iterdir():
            if child.is_file():
                child.unlink(missing_ok=True)

    def _stage(self, snapshot: Snapshot, access_token: Optional[str]) -> Snapshot:
        if snapshot.location is SnapshotLocation.LOCAL:
            if snapshot.checksum or snapshot.path is None:
                return snapshot
            loaded = self._local.load_snapshot(snapshot.path)
            return loaded or snapshot
        if self._cloud is None:
            raise BackupRestoreError("remote store is not configured")
        if not access_token:
            raise BackupRestoreError("not signed in to the remote store")
        self._logger.info("restore_download", id=snapshot.name)
        return self._cloud.download(snapshot, self._staging_dir, access_token)

    # ------------------------------------------------------------------
    def _apply(self, path: Path, *, name: str, report: bool = True) -> int:
        """Swap ``path`` in and migrate it; ``report=False`` keeps the state unchanged."""

        if report:
            self._transition(RestoreState.SWAPPING, id=name)
        self._swap_in(path)
        restored_version = read_user_version(self._store.path)
        current = self._store.current_schema_version
        if restored_version < current:
            if report:
                self._transition(RestoreState.MIGRATING, source=restored_version, target=current)
            self._store.run_migrations(restored_version, current)
        return self._store.count_rows()

    def _swap_in(self, source: Path) -> None:
        with self._store.exclusive() as live_path:
            tmp_path = live_path.with_name(f".{live_path.name}.restore-{os.getpid()}")
            try:
                _fsync_copy(source, tmp_path)
                os.replace(tmp_path, live_path)
            finally:
                tmp_path.unlink(missing_ok=True)
            for suffix in ("-wal", "-shm"):
                Path(f"{live_path}{suffix}").unlink(missing_ok=True)

    def rollback_restore(self, safety: Snapshot) -> bool:
        """Re-apply ``safety`` over the live store. Safe to call repeatedly."""

        if safety.path is None or not Path(safety.path).exists():
            self._logger.error("rollback_failed", id=safety.name, error="safety snapshot missing")
            return False
        try:
            self._apply(Path(safety.path), name=safety.name, report=False)
        except Exception as exc:
            self._logger.error("rollback_failed", id=safety.name, error=str(exc))
            return False
        self._logger.event(event="restore_rolled_back", phase="restore", ok=True, id=safety.name)
        return True

    # ------------------------------------------------------------------
    def _write_marker(self, *, target: Snapshot, safety: Snapshot, state: RestoreState) -> None:
        payload: Dict[str, Any] = {
            "target": target.name,
            "safety": safety.name,
            "safety_path": str(safety.path) if safety.path else None,
            "state": state.value,
        }
        tmp_path = self._marker_path.with_name(self._marker_path.name + ".partial")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self._marker_path)

    def _clear_marker(self) -> None:
        self._marker_path.unlink(missing_ok=True)

    def read_marker(self) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(self._marker_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError:
            self._logger.error("restore_marker_unreadable", path=str(self._marker_path))
            return {}
        return data if isinstance(data, dict) else {}

    def recover_interrupted(self) -> bool:
        """Roll back a restore that did not finish before the last shutdown."""

        marker = self.read_marker()
        if marker is None:
            return False
        safety_path = marker.get("safety_path")
        if not safety_path:
            name = marker.get("safety")
            safety_path = str(self._local.safety_dir / name) if name else None
        safety = self._local.load_snapshot(Path(safety_path), safety=True) if safety_path else None
        if safety is None:
            self._logger.error("restore_recovery_failed", marker=marker, error="safety snapshot missing")
            self._clear_marker()
            return False
        self._transition(RestoreState.ROLLING_BACK, id=marker.get("target"), safety=safety.name)
        recovered = self.rollback_restore(safety)
        if recovered:
            self._clear_marker()
        self._transition(RestoreState.DONE if recovered else RestoreState.FAILED)
        self._transition(RestoreState.IDLE)
        self._logger.event(event="restore_recovered", phase="startup", ok=recovered, safety=safety.name)
        return recovered


__all__ = ["MARKER_NAME", "RestoreManager"]
