from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional

from .paths import get_default_settings_paths, get_logs_dir

__all__ = [
    "DEFAULT_SETTINGS",
    "SETTINGS_VERSION",
    "load_settings",
    "merge_defaults",
    "save_settings",
    "unknown_keys",
    "update_section",
    "update_settings",
]

SETTINGS_VERSION = 1

# Serialises read-modify-write cycles so one toggle never loses another.
_WRITE_LOCK = threading.RLock()

_TOP_LEVEL_EXTRAS = frozenset({"working_dir", "version"})

DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "store": {
        "path": None,
        "schema_version": 1,
        "domain_tables": None,
    },
    "backup": {
        "local_enabled": True,
        "cloud_sync_enabled": True,
        "last_local_backup_utc": None,
        "last_cloud_sync_utc": None,
        "account_id": None,
        "signed_in": False,
        "retention": {
            "local_keep": 7,
            "remote_keep": 30,
            "safety_keep": 3,
        },
        "sync": {
            "interval_h": 24,
            "window_h": 1,
            "require_unmetered": True,
            "require_charging": True,
            "min_battery_pct": 15,
            "metered_interfaces": ["wwan", "rmnet", "ppp", "usb"],
            "watch_interval_s": 5,
            "backoff": {
                "initial_s": 30,
                "max_s": 3600,
                "max_attempts": 3,
            },
        },
        "remote": {
            "base_url": None,
            "prefix": "",
            "timeout_s": 30,
        },
        "encryption": {
            "enabled": False,
        },
    },
}


def merge_defaults(data: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Overlay ``data`` on the defaults, section by section.

    Keys the defaults do not know are carried through untouched; a section
    that is not a mapping in ``data`` falls back to its defaults.
    """

    def overlay(default: Mapping[str, Any], payload: Mapping[str, Any]) -> Dict[str, Any]:
        result = {key: value for key, value in payload.items() if key not in default}
        for key, value in default.items():
            current = payload.get(key, value)
            if isinstance(value, dict):
                result[key] = overlay(value, current if isinstance(current, Mapping) else {})
            elif isinstance(value, list):
                result[key] = list(current) if isinstance(current, list) else list(value)
            else:
                result[key] = current
        return result

    return overlay(DEFAULT_SETTINGS, data or {})


def unknown_keys(payload: Mapping[str, Any], schema: Mapping[str, Any] = DEFAULT_SETTINGS, prefix: str = "") -> Iterator[str]:
    """Dotted paths present in ``payload`` that the defaults do not define."""

    for key, value in payload.items():
        if key not in schema:
            if prefix or key not in _TOP_LEVEL_EXTRAS:
                yield f"{prefix}{key}"
            continue
        expected = schema[key]
        if isinstance(expected, dict) and isinstance(value, Mapping):
            yield from unknown_keys(value, expected, f"{prefix}{key}.")


def _upgrade(settings: Dict[str, Any]) -> Dict[str, Any]:
    try:
        version = int(settings.get("version") or 0)
    except (TypeError, ValueError):
        version = 0
    settings["version"] = max(version, SETTINGS_VERSION)
    return settings


def _report_unknown(settings: Mapping[str, Any], working_dir: Path) -> None:
    found = sorted(unknown_keys(settings))
    if not found:
        return
    target = get_logs_dir(working_dir) / "settings_unknown.json"
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps({"ts": time.time(), "unknown": found}, indent=2), encoding="utf-8")
    except OSError:
        return


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            loaded = json.load(handle)
    except (OSError, json.JSONDecodeError):
        return None
    return loaded if isinstance(loaded, dict) else None


def load_settings(working_dir: Path) -> Dict[str, Any]:
    """First readable settings file in search order, merged over the defaults."""

    data: Dict[str, Any] = {}
    for candidate in get_default_settings_paths(working_dir):
        loaded = _read_json(candidate)
        if loaded is not None:
            data = loaded
            break
    merged = _upgrade(merge_defaults(data))
    merged.setdefault("working_dir", str(working_dir))
    _report_unknown(merged, working_dir)
    return merged


def save_settings(settings: Mapping[str, Any], working_dir: Path) -> None:
    merged = _upgrade(merge_defaults(copy.deepcopy(dict(settings))))
    merged.setdefault("working_dir", str(working_dir))
    path = working_dir / "settings.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    with _WRITE_LOCK:
        fd, tmp_name = tempfile.mkstemp(prefix=".settings.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(merged, handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def update_settings(working_dir: Path, **values: Any) -> None:
    with _WRITE_LOCK:
        current = load_settings(working_dir)
        current.update(values)
        save_settings(current, working_dir)


def update_section(working_dir: Path, section: str, **values: Any) -> Dict[str, Any]:
    """Atomically update keys of one top-level section and return the new section."""

    with _WRITE_LOCK:
        current = load_settings(working_dir)
        block = dict(current.get(section) or {})
        block.update(values)
        current[section] = block
        save_settings(current, working_dir)
        return block
