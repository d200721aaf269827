from __future__ import annotations

import json
import sqlite3
import struct
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence, Tuple

__all__ = [
    "DEFAULT_BUSY_TIMEOUT_MS",
    "Migrator",
    "SQLITE_HEADER_MAGIC",
    "SQLiteStore",
    "connect",
    "configure_connection",
    "read_user_version",
    "transaction",
]

DEFAULT_BUSY_TIMEOUT_MS = 5000
SQLITE_HEADER_MAGIC = b"SQLite format 3\x00"
_HEADER_SIZE = 100

Migrator = Callable[[sqlite3.Connection, int, int], None]


def connect(db_path: str | Path, *, timeout: float = 5.0) -> sqlite3.Connection:
    """Open the live store in autocommit mode with WAL and a busy timeout."""

    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None, check_same_thread=False)
    configure_connection(conn)
    return conn


def configure_connection(conn: sqlite3.Connection, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    mode = conn.execute("PRAGMA journal_mode=WAL").fetchone()
    if not mode or str(mode[0]).lower() != "wal":
        # In-memory and read-only files keep their journal mode.
        conn.execute("PRAGMA synchronous=FULL")


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """``BEGIN IMMEDIATE`` ... ``COMMIT``; any exception rolls back and propagates."""

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def read_user_version(db_path: str | Path) -> int:
    """Return ``PRAGMA user_version`` straight from the file header.

    Reading the header avoids opening a connection, which for WAL databases
    would create side files next to snapshots.
    """

    with Path(db_path).open("rb") as handle:
        header = handle.read(_HEADER_SIZE)
    if len(header) < _HEADER_SIZE or not header.startswith(SQLITE_HEADER_MAGIC):
        raise sqlite3.DatabaseError(f"{db_path} is not a SQLite database")
    return struct.unpack(">i", header[60:64])[0]


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _sql_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    return value


class SQLiteStore:
    """Handle on the live application database.

    The backup subsystem only needs a narrow surface: a WAL checkpoint, a way to
    close every handle while the primary file is swapped, the schema version the
    running code expects, a migration hook and a row count for reporting.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        schema_version: int,
        migrator: Optional[Migrator] = None,
        domain_tables: Optional[Sequence[str]] = None,
    ) -> None:
        self._path = Path(path)
        self._schema_version = int(schema_version)
        self._migrator = migrator
        self._domain_tables = tuple(domain_tables) if domain_tables else None
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    @property
    def path(self) -> Path:
        return self._path

    @property
    def current_schema_version(self) -> int:
        return self._schema_version

    @property
    def connection(self) -> sqlite3.Connection:
        return self.open()

    def open(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                self._conn = connect(self._path)
            return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def exclusive(self) -> Iterator[Path]:
        """Close all handles for the duration of the block, then reopen."""

        with self._lock:
            self.close()
            try:
                yield self._path
            finally:
                self.open()

    # ------------------------------------------------------------------
    def checkpoint(self) -> Tuple[int, int, int]:
        """Flush the WAL into the primary file.

        Returns the ``(busy, log_frames, checkpointed_frames)`` triple reported by
        SQLite; ``busy == 1`` means another connection prevented completion.
        """

        with self._lock:
            row = self.connection.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
        if not row:
            return (0, 0, 0)
        return (int(row[0]), int(row[1]), int(row[2]))

    def size_bytes(self) -> int:
        total = 0
        for candidate in (self._path, Path(f"{self._path}-wal")):
            try:
                total += candidate.stat().st_size
            except OSError:
                continue
        return total

    def stored_schema_version(self) -> int:
        with self._lock:
            row = self.connection.execute("PRAGMA user_version").fetchone()
        return int(row[0]) if row else 0

    def run_migrations(self, from_version: int, to_version: int) -> None:
        with self._lock:
            conn = self.connection
            with transaction(conn):
                if self._migrator is not None:
                    self._migrator(conn, int(from_version), int(to_version))
                conn.execute(f"PRAGMA user_version={int(to_version)}")

    def count_rows(self) -> int:
        with self._lock:
            conn = self.connection
            tables = self._domain_tables
            if tables is None:
                rows = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
                ).fetchall()
                tables = tuple(str(row[0]) for row in rows)
            total = 0
            for table in tables:
                row = conn.execute(f"SELECT COUNT(*) FROM {_quote_identifier(table)}").fetchone()
                total += int(row[0]) if row else 0
            return total

    def merge_rows(self, tables: Mapping[str, Sequence[Mapping[str, Any]]]) -> int:
        """Insert ``tables`` into the store in one transaction.

        An ``INTEGER PRIMARY KEY`` column is left to SQLite so merged rows never
        collide with existing ids; keys that name no column are dropped.
        """

        inserted = 0
        with self._lock:
            conn = self.connection
            with transaction(conn):
                for table, rows in tables.items():
                    quoted = _quote_identifier(table)
                    info = conn.execute(f"PRAGMA table_info({quoted})").fetchall()
                    if not info:
                        raise sqlite3.OperationalError(f"no such table: {table}")
                    keys = [col for col in info if col[5]]
                    rowid_alias = {keys[0][1]} if len(keys) == 1 and str(keys[0][2]).upper() == "INTEGER" else set()
                    writable = {str(col[1]) for col in info} - rowid_alias
                    for row in rows:
                        names = [name for name in row if name in writable]
                        if not names:
                            conn.execute(f"INSERT INTO {quoted} DEFAULT VALUES")
                        else:
                            columns = ", ".join(_quote_identifier(name) for name in names)
                            marks = ", ".join("?" for _ in names)
                            conn.execute(
                                f"INSERT INTO {quoted} ({columns}) VALUES ({marks})",
                                [_sql_value(row[name]) for name in names],
                            )
                        inserted += 1
        return inserted
