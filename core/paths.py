from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Iterator, List

__all__ = [
    "ensure_working_dir_structure",
    "get_backups_dir",
    "get_data_dir",
    "get_default_settings_paths",
    "get_logs_dir",
    "get_safety_dir",
    "get_staging_dir",
    "get_store_path",
    "resolve_working_dir",
]

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_HOME_ENV = "SYMPTOMLOG_HOME"
_STORE_FILENAME = "symptomlog.db"


def _candidates() -> Iterator[Path]:
    env_home = os.environ.get(_HOME_ENV)
    if env_home:
        yield Path(os.path.expandvars(os.path.expanduser(env_home))).resolve()
    yield Path.home() / ".symptomlog"


def _usable(directory: Path) -> bool:
    """Create ``directory`` with its data dir and prove it accepts writes."""

    try:
        get_data_dir(directory).mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryFile(dir=directory):
            pass
    except OSError:
        return False
    return True


def resolve_working_dir() -> Path:
    """Resolve the symptomlog working directory, creating it if required.

    ``$SYMPTOMLOG_HOME`` wins when it is writable, then ``~/.symptomlog``;
    ``~/symptomlog`` is the last resort and is created unconditionally.
    """

    for candidate in _candidates():
        if _usable(candidate):
            return candidate
    fallback = Path.home() / "symptomlog"
    get_data_dir(fallback).mkdir(parents=True, exist_ok=True)
    return fallback


def get_data_dir(working_dir: Path) -> Path:
    return working_dir / "data"


def get_store_path(working_dir: Path) -> Path:
    return get_data_dir(working_dir) / _STORE_FILENAME


def get_backups_dir(working_dir: Path) -> Path:
    return working_dir / "backups"


def get_safety_dir(working_dir: Path) -> Path:
    """Pre-restore safety snapshots live apart from the normal rotation."""

    return get_backups_dir(working_dir) / "safety"


def get_staging_dir(working_dir: Path) -> Path:
    return get_backups_dir(working_dir) / "staging"


def get_logs_dir(working_dir: Path) -> Path:
    return working_dir / "logs"


def ensure_working_dir_structure(working_dir: Path) -> None:
    for directory in (
        get_data_dir(working_dir),
        get_safety_dir(working_dir),
        get_staging_dir(working_dir),
        get_logs_dir(working_dir),
    ):
        directory.mkdir(parents=True, exist_ok=True)


def get_default_settings_paths(working_dir: Path) -> List[Path]:
    """Search order for settings.json: the working dir, then the checkout."""

    return [working_dir / "settings.json", _PROJECT_ROOT / "settings.json"]
