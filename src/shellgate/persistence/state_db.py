"""SQLite file behind the event ledger: schema migrations, pragmas and retries.

Connections are short-lived and opened per operation. Each one enables foreign keys,
sets a busy timeout and switches the file to WAL. ``SQLITE_BUSY`` is retried with
exponential backoff; corruption and exhausted retries surface as typed errors.

Migrations are checksummed. Editing an applied migration is reported instead of
silently diverging from databases created by an older build.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from shellgate.constants import LEDGER_SCHEMA_VERSION
from shellgate.utils.fs import ensure_parent_dir

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_VERSIONS_TABLE: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""


class StateDBError(RuntimeError):
    """Base class for ledger database failures."""


class StateDBBusyError(StateDBError):
    """The database stayed locked through every retry."""


class StateDBMigrationError(StateDBError):
    """The on-disk schema cannot be brought to ``LEDGER_SCHEMA_VERSION``."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported a malformed file."""


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        digest = hashlib.sha256(f"{self.version}:{self.name}\n".encode())
        for statement in self.statements:
            lines = (line.rstrip() for line in statement.strip().splitlines())
            digest.update("\n".join(lines).encode("utf-8") + b"\n--\n")
        return digest.hexdigest()


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


MIGRATIONS: Final[tuple[Migration, ...]] = (
    Migration(
        version=1,
        name="event_ledger_schema",
        statements=(
            _VERSIONS_TABLE,
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS event_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
                type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS snapshots (
                run_id TEXT PRIMARY KEY REFERENCES runs(id) ON DELETE CASCADE,
                state_value TEXT NOT NULL,
                context_json TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
            """,
            """
            CREATE TRIGGER IF NOT EXISTS event_log_append_only_update
            BEFORE UPDATE ON event_log
            BEGIN
                SELECT RAISE(ABORT, 'event_log is append-only');
            END
            """,
            "CREATE INDEX IF NOT EXISTS idx_event_log_run_id ON event_log(run_id, id)",
            "CREATE INDEX IF NOT EXISTS idx_runs_created ON runs(created_at DESC)",
        ),
    ),
)


def _codes(*names: str) -> frozenset[int]:
    return frozenset(
        code for code in (getattr(sqlite3, name, None) for name in names) if isinstance(code, int)
    )


_BUSY_CODES: Final[frozenset[int]] = _codes(
    "SQLITE_BUSY", "SQLITE_BUSY_RECOVERY", "SQLITE_BUSY_SNAPSHOT", "SQLITE_LOCKED"
)
_CORRUPT_CODES: Final[frozenset[int]] = _codes("SQLITE_CORRUPT", "SQLITE_NOTADB")
_BUSY_TEXT: Final[tuple[str, ...]] = ("database is locked", "table is locked")
_CORRUPT_TEXT: Final[tuple[str, ...]] = ("malformed", "file is not a database")


def _is_busy(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    return code in _BUSY_CODES or any(text in str(exc).lower() for text in _BUSY_TEXT)


def _is_corrupt(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    return code in _CORRUPT_CODES or any(text in str(exc).lower() for text in _CORRUPT_TEXT)


class StateDB:
    """Migrated SQLite file with retrying statement helpers."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        for name, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retry_limit", busy_retry_limit),
            ("busy_retry_backoff_ms", busy_retry_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._retry_limit = busy_retry_limit
        self._backoff_seconds = busy_retry_backoff_ms / 1000.0

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        ensure_parent_dir(self._path)
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise self._wrap(exc, "connect") from exc
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            mode = str(conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]).lower()
            if mode != "wal":
                raise StateDBError(f"journal_mode must be WAL, got {mode!r}")
        except sqlite3.Error as exc:
            conn.close()
            raise self._wrap(exc, "configure connection") from exc
        except StateDBError:
            conn.close()
            raise
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self, *, conn: sqlite3.Connection | None = None, immediate: bool = True
    ) -> Iterator[sqlite3.Connection]:
        """Commit on success and roll back on error; an open transaction is joined."""

        if conn is None:
            with self.connection() as owned, self.transaction(conn=owned, immediate=immediate):
                yield owned
            return
        if conn.in_transaction:
            yield conn
            return

        self._run(conn, "BEGIN IMMEDIATE" if immediate else "BEGIN", (), "begin")
        try:
            yield conn
        except BaseException:
            self._run(conn, "ROLLBACK", (), "rollback")
            raise
        self._run(conn, "COMMIT", (), "commit")

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""

        known = [migration.version for migration in MIGRATIONS]
        if known != list(range(1, len(known) + 1)) or LEDGER_SCHEMA_VERSION > len(known):
            raise StateDBMigrationError(
                f"migrations {known} cannot reach schema version {LEDGER_SCHEMA_VERSION}"
            )

        with self.connection() as conn:
            self._run(conn, _VERSIONS_TABLE, (), "create schema_versions")
            applied = {record.version: record for record in self._applied(conn)}
            newest = max(applied, default=0)
            if newest > LEDGER_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"ledger schema {newest} is newer than this build supports "
                    f"({LEDGER_SCHEMA_VERSION})"
                )
            for migration in MIGRATIONS[:LEDGER_SCHEMA_VERSION]:
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            f"migration {migration.version} ({migration.name}) was modified "
                            "after it was applied"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._run(tx, statement, (), f"migration {migration.version}")
                    self._run(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, _utc_now()),
                        f"record migration {migration.version}",
                    )
            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        version = 0 if row is None else row["version"]
        if not isinstance(version, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return version

    def execute(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> int:
        """Run one statement and return the affected row count."""

        with self.transaction(conn=conn) as tx:
            return self._run(tx, sql, params, "execute").rowcount

    def insert(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> int:
        """Run an INSERT and return the new rowid."""

        with self.transaction(conn=conn) as tx:
            return int(self._run(tx, sql, params, "insert").lastrowid or 0)

    def query_all(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> list[dict[str, RowValue]]:
        if conn is not None:
            return [dict(row) for row in self._run(conn, sql, params, "query").fetchall()]
        with self.connection() as owned:
            return [dict(row) for row in self._run(owned, sql, params, "query").fetchall()]

    def query_one(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> dict[str, RowValue] | None:
        rows = self.query_all(sql, params, conn=conn)
        return rows[0] if rows else None

    def backup(self, destination: str | Path) -> Path:
        """Copy the live database to ``destination`` with SQLite's online backup."""

        target_path = ensure_parent_dir(Path(destination).expanduser())
        target = sqlite3.connect(target_path, isolation_level=None)
        try:
            with self.connection() as source:
                source.backup(target)
            target.execute("PRAGMA journal_mode=WAL")
        finally:
            target.close()
        return target_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return SQLite's integrity complaints; an empty tuple means the file is sound."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({int(max_errors)})")
        messages = tuple(str(next(iter(row.values()), "")) for row in rows)
        return () if messages == ("ok",) else messages

    def _applied(self, conn: sqlite3.Connection) -> list[MigrationRecord]:
        rows = self.query_all(
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version",
            conn=conn,
        )
        return [
            MigrationRecord(
                version=int(row["version"]),  # type: ignore[arg-type]
                name=str(row["name"]),
                checksum=str(row["checksum"]),
                applied_at=str(row["applied_at"]),
            )
            for row in rows
        ]

    def _run(
        self, conn: sqlite3.Connection, sql: str, params: SQLParams, operation: str
    ) -> sqlite3.Cursor:
        attempt = 0
        while True:
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if _is_busy(exc) and attempt < self._retry_limit:
                    time.sleep(self._backoff_seconds * 2**attempt)
                    attempt += 1
                    continue
                raise self._wrap(exc, operation) from exc

    def _wrap(self, exc: sqlite3.Error, operation: str) -> StateDBError:
        if _is_corrupt(exc):
            return StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}; run integrity_check() "
                "and restore from a backup()"
            )
        if _is_busy(exc):
            return StateDBBusyError(
                f"{operation} on {self._path} still locked after "
                f"{self._retry_limit + 1} attempt(s): {exc}"
            )
        return StateDBError(f"{operation} failed for {self._path}: {exc}")


def _utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Key-sorted compact JSON used for every stored payload."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MIGRATIONS",
    "Migration",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
