"""Common dataclasses shared across backup modules."""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple, Union


class SnapshotLocation(str, enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"


class SnapshotStatus(str, enum.Enum):
    AVAILABLE = "available"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    FAILED = "failed"
    CORRUPTED = "corrupted"


class BackupFailureKind(str, enum.Enum):
    STORAGE_FULL = "storage_full"
    STORE_LOCKED = "store_locked"
    CHECKPOINT_FAILED = "checkpoint_failed"
    COPY_FAILED = "copy_failed"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    UPLOAD_FAILED = "upload_failed"
    AUTH_FAILED = "auth_failed"
    NETWORK_UNAVAILABLE = "network_unavailable"
    UNKNOWN = "unknown"


class RestoreFailureKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    CORRUPTED = "corrupted"
    VERSION_INCOMPATIBLE = "version_incompatible"
    DOWNLOAD_FAILED = "download_failed"
    INTERRUPTED = "interrupted"
    NETWORK_UNAVAILABLE = "network_unavailable"
    UNKNOWN = "unknown"


class RestoreState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SAFETY_SNAPSHOTTING = "safety_snapshotting"
    SWAPPING = "swapping"
    MIGRATING = "migrating"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Snapshot:
    """A full, immutable point-in-time copy of the store."""

    name: str
    location: SnapshotLocation
    created: datetime
    size_bytes: int
    schema_version: int
    checksum: str = ""
    status: SnapshotStatus = SnapshotStatus.AVAILABLE
    path: Optional[Path] = None
    sequence: int = 0
    label: Optional[str] = None
    safety: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_restorable(self) -> bool:
        return self.status is SnapshotStatus.AVAILABLE

    def sort_key(self) -> Tuple[datetime, int, str]:
        return (self.created, self.sequence, self.name)


@dataclass(frozen=True, slots=True)
class BackupSuccess:
    snapshot: Snapshot
    duration_ms: int
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True, slots=True)
class BackupFailure:
    kind: BackupFailureKind
    message: str
    cause: Optional[BaseException] = None
    ok: bool = field(default=False, init=False)


@dataclass(frozen=True, slots=True)
class RestoreSuccess:
    items_restored: int
    source_snapshot: Snapshot
    duration_ms: int
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True, slots=True)
class RestoreFailure:
    kind: RestoreFailureKind
    message: str
    cause: Optional[BaseException] = None
    ok: bool = field(default=False, init=False)


BackupOutcome = Union[BackupSuccess, BackupFailure]
RestoreOutcome = Union[RestoreSuccess, RestoreFailure]


@dataclass(frozen=True, slots=True)
class SyncNever:
    pass


@dataclass(frozen=True, slots=True)
class SyncSynced:
    last_utc: datetime


@dataclass(frozen=True, slots=True)
class SyncSyncing:
    upload_pct: int = 0
    download_pct: int = 0


@dataclass(frozen=True, slots=True)
class SyncFailed:
    message: str


SyncStatus = Union[SyncNever, SyncSynced, SyncSyncing, SyncFailed]


@dataclass(slots=True)
class BackupSettings:
    """Persisted user configuration plus counts derived from live listings."""

    local_backups_enabled: bool = True
    cloud_sync_enabled: bool = True
    last_local_backup_utc: Optional[datetime] = None
    last_cloud_sync_utc: Optional[datetime] = None
    account_id: Optional[str] = None
    signed_in: bool = False
    local_backups_count: int = 0
    local_storage_bytes: int = 0
    cloud_backups_count: int = 0
    cloud_storage_bytes: int = 0

    @property
    def total_backups_count(self) -> int:
        return self.local_backups_count + self.cloud_backups_count

    def is_valid(self) -> bool:
        counts = (
            self.local_backups_count,
            self.local_storage_bytes,
            self.cloud_backups_count,
            self.cloud_storage_bytes,
        )
        if any(value < 0 for value in counts):
            return False
        return not self.signed_in or self.account_id is not None


@dataclass(slots=True)
class RetentionSummary:
    removed: List[str]
    kept: List[str]
    freed_bytes: int


@dataclass(frozen=True, slots=True)
class SnapshotDisplay:
    name: str
    created_text: str
    relative_age: str
    size_text: str
    location: SnapshotLocation
    schema_version: int
    is_latest: bool = False


__all__ = [
    "BackupFailure",
    "BackupFailureKind",
    "BackupOutcome",
    "BackupSettings",
    "BackupSuccess",
    "RestoreFailure",
    "RestoreFailureKind",
    "RestoreOutcome",
    "RestoreState",
    "RestoreSuccess",
    "RetentionSummary",
    "Snapshot",
    "SnapshotDisplay",
    "SnapshotLocation",
    "SnapshotStatus",
    "SyncFailed",
    "SyncNever",
    "SyncStatus",
    "SyncSynced",
    "SyncSyncing",
]
