"""Shared fakes for the backup tests: a seeded SQLite store and an in-memory object store."""
from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote, urlsplit

import pytest

from backup.create import LocalBackupManager
from backup.logs import BackupLogger
from backup.verify import clear_cache
from core.db import SQLiteStore

_META_PREFIX = "X-Object-Meta-"


def seed_database(path: Path, *, version: int = 1, rows: int = 3) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE IF NOT EXISTS symptoms(id INTEGER PRIMARY KEY, name TEXT)")
        conn.executemany("INSERT INTO symptoms(name) VALUES (?)", [(f"entry-{idx}",) for idx in range(rows)])
        conn.execute(f"PRAGMA user_version={int(version)}")
        conn.commit()
    finally:
        conn.close()


def count_symptoms(path: Path) -> int:
    conn = sqlite3.connect(path)
    try:
        return int(conn.execute("SELECT COUNT(*) FROM symptoms").fetchone()[0])
    finally:
        conn.close()


@pytest.fixture(autouse=True)
def _fresh_verify_cache():
    clear_cache()
    yield
    clear_cache()


@pytest.fixture
def make_store(tmp_path):
    stores: List[SQLiteStore] = []

    def factory(*, version: int = 1, rows: int = 3, migrator=None, name: str = "symptomlog.db") -> SQLiteStore:
        path = tmp_path / "data" / name
        seed_database(path, version=version, rows=rows)
        store = SQLiteStore(path, schema_version=version, migrator=migrator)
        stores.append(store)
        return store

    yield factory
    for store in stores:
        store.close()


@pytest.fixture
def backup_logger(tmp_path) -> BackupLogger:
    return BackupLogger(tmp_path)


@pytest.fixture
def make_manager(tmp_path, backup_logger):
    def factory(store: SQLiteStore, **options) -> LocalBackupManager:
        options.setdefault("disk_free", lambda _path: 10 * 1024 ** 3)
        options.setdefault("sleep", lambda _delay: None)
        return LocalBackupManager(store, tmp_path / "backups", logger=backup_logger, **options)

    return factory


class FakeResponse:
    def __init__(self, status_code: int = 200, *, content: bytes = b"", payload=None, reason: str = "OK") -> None:
        self.status_code = status_code
        self.content = content
        self.reason = reason
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeObjectSession:
    """Stands in for ``requests.Session`` in front of a dict of objects.

    ``put_failures`` is consumed one entry per PUT: an exception instance is
    raised, an int is returned as the HTTP status.
    """

    def __init__(self) -> None:
        self.objects: Dict[str, Tuple[bytes, Dict[str, str]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.put_failures: List[object] = []
        self.last_headers: Optional[Dict[str, str]] = None
        self.last_timeout: Optional[float] = None

    def _name(self, url: str) -> str:
        path = urlsplit(url).path
        tail = path.split("/objects", 1)[1]
        return unquote(tail.lstrip("/"))

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        name = self._name(url)
        self.calls.append((method, name))
        self.last_headers = dict(kwargs.get("headers") or {})
        self.last_timeout = kwargs.get("timeout")

        if method == "PUT":
            if self.put_failures:
                failure = self.put_failures.pop(0)
                if isinstance(failure, BaseException):
                    raise failure
                return FakeResponse(int(failure), reason="failure")
            data = kwargs.get("data")
            body = data if isinstance(data, bytes) else b"".join(data)
            meta = {
                key[len(_META_PREFIX):]: value
                for key, value in self.last_headers.items()
                if key.startswith(_META_PREFIX)
            }
            self.objects[name] = (body, meta)
            return FakeResponse(201, reason="Created")

        if method == "GET" and not name:
            prefix = (kwargs.get("params") or {}).get("prefix") or ""
            listing = {
                "objects": [
                    {"name": key, "size": len(body), "metadata": meta}
                    for key, (body, meta) in sorted(self.objects.items())
                    if key.startswith(prefix)
                ]
            }
            return FakeResponse(200, payload=listing)

        if name not in self.objects:
            return FakeResponse(404, payload={"code": "not_found", "message": "no such object"}, reason="Not Found")
        if method == "GET":
            return FakeResponse(200, content=self.objects[name][0])
        if method == "DELETE":
            del self.objects[name]
            return FakeResponse(204, reason="No Content")
        return FakeResponse(405, reason="Method Not Allowed")

    def snapshot_names(self) -> List[str]:
        return sorted(name for name in self.objects if name.endswith(".snapshot"))


@pytest.fixture
def object_session() -> FakeObjectSession:
    return FakeObjectSession()


@pytest.fixture
def seed_db():
    return seed_database


@pytest.fixture
def symptom_count():
    return count_symptoms
