"""Backup, retention and restore for the symptomlog store."""
from __future__ import annotations

from .api import BackupRepository
from .errors import BackupError
from .json_backup import JsonBackupPreview
from .retention import RetentionPolicy
from .sync import StaticIdentity
from .types import (
    BackupFailure,
    BackupFailureKind,
    BackupOutcome,
    BackupSettings,
    BackupSuccess,
    RestoreFailure,
    RestoreFailureKind,
    RestoreOutcome,
    RetentionSummary,
    Snapshot,
    SnapshotLocation,
    SnapshotStatus,
)

__all__ = [
    "BackupError",
    "BackupFailure",
    "BackupFailureKind",
    "BackupOutcome",
    "BackupRepository",
    "BackupSettings",
    "BackupSuccess",
    "JsonBackupPreview",
    "RestoreFailure",
    "RestoreFailureKind",
    "RestoreOutcome",
    "RetentionPolicy",
    "RetentionSummary",
    "Snapshot",
    "SnapshotLocation",
    "SnapshotStatus",
    "StaticIdentity",
]
