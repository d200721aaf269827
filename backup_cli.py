#!/usr/bin/env python3
"""Command line front end for symptomlog backups."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from backup.api import BackupRepository
from backup.sync import StaticIdentity
from backup.types import BackupFailure, RestoreFailure, Snapshot, SnapshotLocation, SyncSynced
from backup.verify import verify
from core.logging_utils import configure_json_logging, redact_secret
from core.paths import resolve_working_dir

LOGGER = logging.getLogger("symptomlog.backup_cli")

_TOKEN_ENV = "SYMPTOMLOG_TOKEN"
_ACCOUNT_ENV = "SYMPTOMLOG_ACCOUNT"
_PASSWORD_ENV = "SYMPTOMLOG_BACKUP_PASSWORD"


def _snapshot_dict(snapshot: Snapshot) -> Dict[str, Any]:
    return {
        "name": snapshot.name,
        "location": snapshot.location.value,
        "created": snapshot.created.isoformat(),
        "size_bytes": snapshot.size_bytes,
        "schema_version": snapshot.schema_version,
        "checksum": snapshot.checksum,
        "status": snapshot.status.value,
        "label": snapshot.label,
    }


def _outcome_dict(outcome: Any) -> Dict[str, Any]:
    if isinstance(outcome, (BackupFailure, RestoreFailure)):
        return {"ok": False, "kind": outcome.kind.value, "message": outcome.message}
    payload: Dict[str, Any] = {"ok": True, "duration_ms": outcome.duration_ms}
    if hasattr(outcome, "snapshot"):
        payload["snapshot"] = _snapshot_dict(outcome.snapshot)
    else:
        payload["items_restored"] = outcome.items_restored
        payload["source"] = _snapshot_dict(outcome.source_snapshot)
    return payload


def _find(snapshots: List[Snapshot], name: str) -> Optional[Snapshot]:
    for snapshot in snapshots:
        if snapshot.name == name:
            return snapshot
    return None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create, sync and restore symptomlog backups")
    parser.add_argument("--working-dir", dest="working_dir", default=None, help="Override the working directory")
    parser.add_argument("--token", default=None, help=f"Remote access token (default: ${_TOKEN_ENV})")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a local snapshot")
    create.add_argument("--label", default=None, help="Named backup suffix")
    create.add_argument("--import", dest="import_path", default=None, help="Import an external SQLite file instead")

    listing = sub.add_parser("list", help="List snapshots")
    listing.add_argument("--cloud", action="store_true", help="List remote snapshots instead of local ones")

    delete = sub.add_parser("delete", help="Delete snapshots")
    delete.add_argument("name", nargs="?", help="Snapshot name")
    delete.add_argument("--all", action="store_true", help="Delete every local snapshot")
    delete.add_argument("--cloud", action="store_true", help="Delete from the remote store")

    restore = sub.add_parser("restore", help="Restore the live store from a snapshot")
    restore.add_argument("name", help="Snapshot name")
    restore.add_argument("--cloud", action="store_true", help="Restore from the remote store")

    restore_json = sub.add_parser("restore-json", help="Merge the rows of a JSON export into the live store")
    restore_json.add_argument("path", help="JSON export to merge")

    preview = sub.add_parser("preview-json", help="Summarise a JSON export without restoring it")
    preview.add_argument("path", help="JSON export to inspect")

    check = sub.add_parser("verify", help="Re-hash a local snapshot against its companion digest")
    check.add_argument("name", help="Snapshot name")

    sync = sub.add_parser("sync", help="Upload a fresh snapshot now")
    sync.add_argument("--auto", action="store_true", help="Overwrite the rolling auto slot")
    sync.add_argument("--label", default=None, help="Named backup suffix")

    sub.add_parser("recover", help="Roll back a restore interrupted by a crash")
    sub.add_parser("status", help="Show settings, counts and sync status")
    return parser


def _run(repo: BackupRepository, args: argparse.Namespace) -> Dict[str, Any]:
    if args.command == "create":
        if args.import_path:
            return _outcome_dict(repo.import_snapshot(Path(args.import_path).expanduser()))
        return _outcome_dict(repo.create_local_backup(label=args.label))

    if args.command == "list":
        snapshots = repo.list_cloud_backups() if args.cloud else repo.list_local_backups()
        return {"ok": True, "snapshots": [_snapshot_dict(snap) for snap in snapshots]}

    if args.command == "delete":
        if args.all and not args.cloud:
            return {"ok": True, "deleted": repo.delete_all_local_backups()}
        if not args.name:
            return {"ok": False, "message": "snapshot name required"}
        pool = repo.list_cloud_backups() if args.cloud else repo.list_local_backups()
        target = _find(pool, args.name)
        if target is None:
            return {"ok": False, "message": f"{args.name} not found"}
        if args.cloud:
            return {"ok": repo.delete_cloud_backup(target)}
        return {"ok": repo.delete_local_backup(target)}

    if args.command == "restore":
        pool = repo.list_cloud_backups() if args.cloud else repo.list_local_backups()
        target = _find(pool, args.name)
        if target is None:
            location = SnapshotLocation.REMOTE if args.cloud else SnapshotLocation.LOCAL
            return {"ok": False, "kind": "not_found", "message": f"{args.name} not found ({location.value})"}
        return _outcome_dict(repo.restore_from_backup(target))

    if args.command == "restore-json":
        return _outcome_dict(repo.restore_from_json(Path(args.path).expanduser().read_bytes()))

    if args.command == "preview-json":
        summary = repo.preview_json_backup(Path(args.path).expanduser().read_bytes())
        return {
            "ok": summary.ok,
            "version": summary.version,
            "timestamp": summary.timestamp,
            "counts": summary.counts,
            "samples": summary.samples,
            "summary": summary.summary(),
        }

    if args.command == "verify":
        target = _find(repo.list_local_backups(), args.name)
        if target is None:
            return {"ok": False, "message": f"{args.name} not found"}
        return {"ok": verify(target, strict=True), "name": target.name, "checksum": target.checksum}

    if args.command == "sync":
        return _outcome_dict(repo.sync_to_cloud(is_auto_slot=bool(args.auto), label=args.label))

    if args.command == "recover":
        return {"ok": True, "recovered": repo.recover_interrupted()}

    settings = repo.observe_settings()
    status = repo.sync_status
    return {
        "ok": settings.is_valid(),
        "local_enabled": settings.local_backups_enabled,
        "cloud_sync_enabled": settings.cloud_sync_enabled,
        "signed_in": settings.signed_in,
        "local": {"count": settings.local_backups_count, "bytes": settings.local_storage_bytes},
        "cloud": {"count": settings.cloud_backups_count, "bytes": settings.cloud_storage_bytes},
        "total": settings.total_backups_count,
        "last_local_backup_utc": settings.last_local_backup_utc.isoformat() if settings.last_local_backup_utc else None,
        "sync_status": type(status).__name__,
        "last_cloud_sync_utc": status.last_utc.isoformat() if isinstance(status, SyncSynced) else None,
        "recent_events": repo.recent_events(5),
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    working_dir = Path(args.working_dir).expanduser() if args.working_dir else resolve_working_dir()
    configure_json_logging("symptomlog", working_dir)
    token = args.token or os.environ.get(_TOKEN_ENV)
    identity = StaticIdentity(access_token=token, account_id=os.environ.get(_ACCOUNT_ENV))
    LOGGER.info("backup_cli %s token=%s", args.command, redact_secret(token))

    try:
        repo = BackupRepository(
            working_dir=working_dir,
            identity=identity,
            encryption_password=os.environ.get(_PASSWORD_ENV) or None,
            recover=args.command != "recover",
        )
    except Exception as exc:
        LOGGER.exception("Could not open backup repository: %s", exc)
        print(json.dumps({"ok": False, "message": str(exc)}, indent=2))
        return 1

    try:
        result = _run(repo, args)
    except Exception as exc:
        LOGGER.exception("%s failed: %s", args.command, exc)
        result = {"ok": False, "message": str(exc)}
    finally:
        repo.close()

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("ok") else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
