"""Error hierarchy for backup operations.

These never cross the public boundary of the managers; they are translated
into ``BackupFailure`` / ``RestoreFailure`` outcomes there.
"""
from __future__ import annotations


class BackupError(RuntimeError):
    """Base exception for backup related failures."""


class BackupVerificationError(BackupError):
    """Raised when verification of a snapshot fails."""


class BackupRestoreError(BackupError):
    """Raised when restoring a snapshot fails."""


class InsufficientStorageError(BackupError):
    """Not enough free space to hold another copy of the store."""


class StoreLockedError(BackupError):
    """The live store stayed locked by another writer."""


class CheckpointError(BackupError):
    """The WAL checkpoint could not be executed."""


class SnapshotCopyError(BackupError):
    """Copying the store file into a snapshot failed."""


class RemoteError(BackupError):
    """Base class for remote object store failures."""


class RemoteTransientError(RemoteError):
    """Network, timeout or server-side error that is worth retrying."""

    def __init__(self, message: str, *, unreachable: bool = False) -> None:
        super().__init__(message)
        self.unreachable = unreachable


class RemoteAuthError(RemoteError):
    """Credentials missing or rejected by the remote store."""


class RemoteQuotaError(RemoteError):
    """Remote storage quota exhausted."""


class RemoteNotFound(RemoteError):
    """Requested remote object does not exist."""


class SyncCancelled(BackupError):
    """A transfer was cancelled because its run lost its constraints."""


class JsonBackupError(BackupError):
    """A JSON export could not be parsed or does not match the expected layout."""


class JsonVersionError(JsonBackupError):
    """A JSON export was written by a different schema version."""


__all__ = [
    "BackupError",
    "BackupRestoreError",
    "BackupVerificationError",
    "CheckpointError",
    "InsufficientStorageError",
    "JsonBackupError",
    "JsonVersionError",
    "RemoteAuthError",
    "RemoteError",
    "RemoteNotFound",
    "RemoteQuotaError",
    "RemoteTransientError",
    "SnapshotCopyError",
    "StoreLockedError",
    "SyncCancelled",
]
