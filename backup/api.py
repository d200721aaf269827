"""Public API for backup operations."""
from __future__ import annotations

import threading
from concurrent.futures import CancelledError, Future
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from core.db import Migrator, SQLiteStore
from core.paths import (
    ensure_working_dir_structure,
    get_backups_dir,
    get_safety_dir,
    get_staging_dir,
    get_store_path,
    resolve_working_dir,
)
from core.settings import load_settings, update_section

from .cloud import CloudBackupStore, HttpObjectStore
from .create import LocalBackupManager
from .crypto import SnapshotCipher
from .errors import BackupError
from .guard import ExclusionGate, SerialExecutor
from .json_backup import JsonBackupPreview, preview_json_backup
from .logs import BackupLogger
from .restore import RestoreManager
from .retention import RetentionPolicy, RetentionSummary
from .sync import (
    BackoffPolicy,
    CloudSyncScheduler,
    CloudSyncWorker,
    DeviceProbe,
    IdentityProvider,
    PsutilDeviceProbe,
    StaticIdentity,
    SyncConstraints,
)
from .types import (
    BackupFailure,
    BackupFailureKind,
    BackupOutcome,
    BackupSettings,
    BackupSuccess,
    RestoreFailure,
    RestoreFailureKind,
    RestoreOutcome,
    Snapshot,
    SnapshotDisplay,
    SyncNever,
    SyncStatus,
    SyncSynced,
)

Listener = Callable[[str, Any], None]

_MB = 1024 * 1024


def _parse_utc(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def relative_age(created: datetime, now: datetime) -> str:
    seconds = max((now - created).total_seconds(), 0)
    if seconds < 60:
        return "Just now"
    if seconds < 3600:
        return f"{int(seconds // 60)} minutes ago"
    if seconds < 86400:
        return f"{int(seconds // 3600)} hours ago"
    return f"{int(seconds // 86400)} days ago"


def describe_snapshots(snapshots: Sequence[Snapshot], *, now: Optional[datetime] = None) -> List[SnapshotDisplay]:
    now = now or datetime.now(timezone.utc)
    latest = max((snap.sort_key() for snap in snapshots), default=None)
    return [
        SnapshotDisplay(
            name=snap.name,
            created_text=snap.created.astimezone(timezone.utc).strftime("%b %d, %Y %I:%M %p UTC"),
            relative_age=relative_age(snap.created, now),
            size_text=f"{snap.size_bytes / _MB:.1f} MB",
            location=snap.location,
            schema_version=snap.schema_version,
            is_latest=snap.sort_key() == latest,
        )
        for snap in snapshots
    ]


class BackupRepository:
    """Coordinate local backups, cloud sync and restore behind one API."""

    def __init__(
        self,
        *,
        working_dir: Optional[Path] = None,
        settings: Optional[Dict[str, Any]] = None,
        store: Optional[SQLiteStore] = None,
        migrator: Optional[Migrator] = None,
        identity: Optional[IdentityProvider] = None,
        session: Optional[requests.Session] = None,
        probe: Optional[DeviceProbe] = None,
        encryption_password: Optional[str] = None,
        local_manager_options: Optional[Dict[str, Any]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        recover: bool = True,
    ) -> None:
        self._working_dir = Path(working_dir or resolve_working_dir())
        ensure_working_dir_structure(self._working_dir)
        self._settings = dict(settings or load_settings(self._working_dir))
        self._logger = BackupLogger(self._working_dir)
        self._identity: IdentityProvider = identity or StaticIdentity()
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()

        store_cfg = self._section("store")
        self._store = store or SQLiteStore(
            store_cfg.get("path") or get_store_path(self._working_dir),
            schema_version=int(store_cfg.get("schema_version") or 1),
            migrator=migrator,
            domain_tables=store_cfg.get("domain_tables") or None,
        )

        backup_cfg = self._section("backup")
        retention = backup_cfg.get("retention") or {}
        self._local = LocalBackupManager(
            self._store,
            get_backups_dir(self._working_dir),
            logger=self._logger,
            safety_dir=get_safety_dir(self._working_dir),
            policy=RetentionPolicy(keep=int(retention.get("local_keep", 7))),
            safety_policy=RetentionPolicy(keep=int(retention.get("safety_keep", 3))),
            **(local_manager_options or {}),
        )

        self._gate = ExclusionGate()
        self._executor = SerialExecutor()
        self._session = session
        self._cipher = SnapshotCipher(encryption_password) if encryption_password else None
        cloud = self._build_cloud()

        last_sync = _parse_utc(backup_cfg.get("last_cloud_sync_utc"))
        self._sync_status: SyncStatus = SyncSynced(last_utc=last_sync) if last_sync else SyncNever()

        sync_cfg = backup_cfg.get("sync") or {}
        backoff_cfg = sync_cfg.get("backoff") or {}
        self._restore = RestoreManager(
            self._store,
            self._local,
            logger=self._logger,
            staging_dir=get_staging_dir(self._working_dir),
            cloud=cloud,
            gate=self._gate,
        )
        worker_options: Dict[str, Any] = {}
        if sleep is not None:
            worker_options["sleep"] = sleep
        self._worker = CloudSyncWorker(
            self._local,
            cloud,
            logger=self._logger,
            gate=self._gate,
            backoff=BackoffPolicy(
                initial_s=float(backoff_cfg.get("initial_s", 30)),
                max_s=float(backoff_cfg.get("max_s", 3600)),
                max_attempts=int(backoff_cfg.get("max_attempts", 3)),
            ),
            remote_policy=RetentionPolicy(keep=int(retention.get("remote_keep", 30)), exempt_named=True),
            on_status=self._on_sync_status,
            create_snapshot=self._create_serialized,
            **worker_options,
        )
        self._scheduler = CloudSyncScheduler(
            self._worker,
            self._identity,
            logger=self._logger,
            is_enabled=lambda: bool(self._section("backup").get("cloud_sync_enabled", True)),
            constraints=SyncConstraints(
                require_unmetered=bool(sync_cfg.get("require_unmetered", True)),
                require_charging=bool(sync_cfg.get("require_charging", True)),
                min_battery_pct=float(sync_cfg.get("min_battery_pct", 15)),
            ),
            probe=probe or PsutilDeviceProbe(sync_cfg.get("metered_interfaces") or ()),
            gate=self._gate,
            interval_s=float(sync_cfg.get("interval_h", 24)) * 3600.0,
            window_s=float(sync_cfg.get("window_h", 1)) * 3600.0,
            watch_interval_s=float(sync_cfg.get("watch_interval_s", 5)),
        )

        if recover:
            self.recover_interrupted()

    # ------------------------------------------------------------------
    @property
    def working_dir(self) -> Path:
        return self._working_dir

    @property
    def store(self) -> SQLiteStore:
        return self._store

    @property
    def local(self) -> LocalBackupManager:
        return self._local

    @property
    def restore_manager(self) -> RestoreManager:
        return self._restore

    @property
    def scheduler(self) -> CloudSyncScheduler:
        return self._scheduler

    @property
    def sync_status(self) -> SyncStatus:
        return self._sync_status

    def _section(self, name: str) -> Dict[str, Any]:
        block = self._settings.get(name)
        return block if isinstance(block, dict) else {}

    def _build_cloud(self) -> Optional[CloudBackupStore]:
        remote = self._section("backup").get("remote") or {}
        base_url = remote.get("base_url")
        if not base_url:
            return None
        objects = HttpObjectStore(
            str(base_url),
            session=self._session,
            timeout_s=float(remote.get("timeout_s", 30)),
        )
        return CloudBackupStore(objects, prefix=str(remote.get("prefix") or ""), cipher=self._cipher)

    # ------------------------------------------------------------------
    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """Register ``callback(event, payload)``; returns an unsubscribe function."""

        with self._listeners_lock:
            self._listeners.append(callback)

        def remove() -> None:
            with self._listeners_lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return remove

    def _notify(self, event: str, payload: Any) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, payload)
            except Exception as exc:
                self._logger.error("listener_failed", listener_event=event, error=str(exc))

    def _update_backup_settings(self, **values: Any) -> None:
        block = update_section(self._working_dir, "backup", **values)
        self._settings["backup"] = block
        self._notify("settings", self.observe_settings())

    def _on_sync_status(self, status: SyncStatus) -> None:
        self._sync_status = status
        if isinstance(status, SyncSynced):
            self._update_backup_settings(last_cloud_sync_utc=status.last_utc.isoformat())
            self._notify("cloud_backups", self.list_cloud_backups())
        self._notify("sync_status", status)

    # ------------------------------------------------------------------
    def observe_settings(self) -> BackupSettings:
        backup_cfg = self._section("backup")
        local = self.list_local_backups()
        cloud = self.list_cloud_backups()
        account_id = backup_cfg.get("account_id") or getattr(self._identity, "account_id", None)
        return BackupSettings(
            local_backups_enabled=bool(backup_cfg.get("local_enabled", True)),
            cloud_sync_enabled=bool(backup_cfg.get("cloud_sync_enabled", True)),
            last_local_backup_utc=_parse_utc(backup_cfg.get("last_local_backup_utc")),
            last_cloud_sync_utc=_parse_utc(backup_cfg.get("last_cloud_sync_utc")),
            account_id=account_id,
            signed_in=bool(self._identity.is_authenticated() and account_id),
            local_backups_count=len(local),
            local_storage_bytes=sum(snap.size_bytes for snap in local),
            cloud_backups_count=len(cloud),
            cloud_storage_bytes=sum(snap.size_bytes for snap in cloud),
        )

    def set_identity(self, identity: IdentityProvider) -> None:
        self._identity = identity
        self._scheduler.set_identity(identity)
        signed_in = identity.is_authenticated()
        self._update_backup_settings(
            account_id=identity.account_id if signed_in else None,
            signed_in=bool(signed_in and identity.account_id),
        )

    def set_encryption_password(self, password: Optional[str]) -> None:
        self._cipher = SnapshotCipher(password) if password else None
        cloud = self._worker.cloud
        if cloud is not None:
            cloud.set_cipher(self._cipher)
        self._update_backup_settings(encryption={"enabled": self._cipher is not None})

    # ------------------------------------------------------------------
    def list_local_backups(self) -> List[Snapshot]:
        try:
            return self._local.list_local_backups()
        except (OSError, BackupError) as exc:
            self._logger.error("local_list_failed", error=str(exc))
            return []

    def list_cloud_backups(self) -> List[Snapshot]:
        return self._worker.list_cloud_backups(self._identity.get_access_token())

    def describe_snapshots(self, snapshots: Optional[Sequence[Snapshot]] = None) -> List[SnapshotDisplay]:
        if snapshots is None:
            snapshots = self.list_local_backups() + self.list_cloud_backups()
        return describe_snapshots(snapshots)

    def recent_events(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self._logger.recent(limit)

    def storage_usage(self) -> Dict[str, int]:
        count, size = self._local.storage_usage()
        return {"count": count, "bytes": size}

    # ------------------------------------------------------------------
    def _do_create(self, label: Optional[str]) -> BackupOutcome:
        outcome = self._local.create_local_backup(label=label)
        if isinstance(outcome, BackupSuccess):
            self._update_backup_settings(last_local_backup_utc=outcome.snapshot.created.isoformat())
            self._notify("local_backups", self.list_local_backups())
        return outcome

    def _create_serialized(self, label: Optional[str]) -> BackupOutcome:
        try:
            return self.submit_backup(label=label).result()
        except CancelledError as exc:
            return BackupFailure(BackupFailureKind.UNKNOWN, "Backup superseded by a newer request", exc)

    def submit_backup(self, *, label: Optional[str] = None) -> "Future[BackupOutcome]":
        return self._executor.submit(lambda: self._do_create(label), label="backup")

    def create_local_backup(self, *, label: Optional[str] = None) -> BackupOutcome:
        return self._create_serialized(label)

    def import_snapshot(self, path: Path, *, schema_version: Optional[int] = None) -> BackupOutcome:
        future = self._executor.submit(
            lambda: self._local.import_snapshot(Path(path), schema_version=schema_version),
            label="import",
        )
        try:
            outcome = future.result()
        except CancelledError as exc:
            return BackupFailure(BackupFailureKind.UNKNOWN, "Import superseded by a newer request", exc)
        if outcome.ok:
            self._notify("local_backups", self.list_local_backups())
        return outcome

    def delete_local_backup(self, snapshot: Snapshot) -> bool:
        deleted = self._local.delete_local_backup(snapshot)
        if deleted:
            self._notify("local_backups", self.list_local_backups())
        return deleted

    def delete_all_local_backups(self) -> int:
        deleted = self._local.delete_all_local_backups()
        self._notify("local_backups", self.list_local_backups())
        return deleted

    def prune_local(self) -> RetentionSummary:
        return self._local.prune()

    # ------------------------------------------------------------------
    def _do_restore(self, snapshot: Snapshot) -> RestoreOutcome:
        outcome = self._restore.restore_from_backup(snapshot, access_token=self._identity.get_access_token())
        self._notify("restore", outcome)
        return outcome

    def submit_restore(self, snapshot: Snapshot) -> "Future[RestoreOutcome]":
        return self._executor.submit(lambda: self._do_restore(snapshot), label="restore")

    def restore_from_backup(self, snapshot: Snapshot) -> RestoreOutcome:
        try:
            return self.submit_restore(snapshot).result()
        except CancelledError as exc:
            return RestoreFailure(RestoreFailureKind.INTERRUPTED, "Restore superseded by a newer request", exc)

    def preview_json_backup(self, content: str | bytes) -> JsonBackupPreview:
        return preview_json_backup(content)

    def _do_restore_json(self, content: str | bytes) -> RestoreOutcome:
        outcome = self._restore.restore_from_json(content)
        self._notify("restore", outcome)
        return outcome

    def restore_from_json(self, content: str | bytes) -> RestoreOutcome:
        """Merge a JSON export into the live store; takes effect without a restart."""

        future = self._executor.submit(lambda: self._do_restore_json(content), label="restore_json")
        try:
            return future.result()
        except CancelledError as exc:
            return RestoreFailure(RestoreFailureKind.INTERRUPTED, "Restore superseded by a newer request", exc)

    def is_backup_compatible(self, schema_version: int) -> bool:
        return self._restore.is_backup_compatible(schema_version)

    def recover_interrupted(self) -> bool:
        return self._restore.recover_interrupted()

    # ------------------------------------------------------------------
    def toggle_local_backups(self, enabled: bool) -> None:
        self._update_backup_settings(local_enabled=bool(enabled))

    def toggle_cloud_sync(self, enabled: bool) -> None:
        self._update_backup_settings(cloud_sync_enabled=bool(enabled))
        if enabled:
            self._scheduler.start()
        else:
            self._scheduler.stop()

    def sync_to_cloud(self, *, is_auto_slot: bool = False, label: Optional[str] = None) -> BackupOutcome:
        return self._scheduler.sync_now(label=label, is_auto_slot=is_auto_slot)

    def delete_cloud_backup(self, snapshot: Snapshot) -> bool:
        deleted = self._worker.delete_cloud_backup(snapshot, self._identity.get_access_token())
        if deleted:
            self._notify("cloud_backups", self.list_cloud_backups())
        return deleted

    def start_scheduler(self) -> None:
        if self._section("backup").get("cloud_sync_enabled", True):
            self._scheduler.start()

    def close(self) -> None:
        self._scheduler.stop()
        self._executor.shutdown()
        self._store.close()


__all__ = [
    "BackupRepository",
    "describe_snapshots",
    "relative_age",
]
