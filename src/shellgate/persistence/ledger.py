"""Append-only event ledger and latest-snapshot store keyed by run.

``EventLedger`` is the async facade used by the runtime. Storage lives behind the
synchronous :class:`LedgerBackend` protocol; a SQLite backend built on
:class:`~shellgate.persistence.state_db.StateDB` and an in-memory backend ship with
the package. When the durable backend cannot be opened the ledger falls back to
memory and callers never branch on storage mode.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, TypeVar

import structlog

from shellgate.domain.events import RuntimeEvent, event_from_dict, event_to_dict
from shellgate.domain.models import EventRecord, Snapshot, WorkflowContext, utc_now
from shellgate.errors import LedgerUnavailableError
from shellgate.persistence.state_db import StateDB, StateDBError, canonical_json
from shellgate.utils.concurrency import KeyedLocks

T = TypeVar("T")

DEFAULT_RECENT_EVENTS_LIMIT = 100


@dataclass(frozen=True, slots=True)
class StoredEvent:
    monotonic_id: int
    run_id: str
    payload_json: str
    timestamp: str


@dataclass(frozen=True, slots=True)
class StoredSnapshot:
    run_id: str
    state_value: str
    context_json: str
    timestamp: str


@dataclass(frozen=True, slots=True)
class RunSummary:
    run_id: str
    created_at: datetime
    event_count: int


class LedgerBackend(Protocol):
    """Synchronous storage contract behind :class:`EventLedger`."""

    @property
    def durable(self) -> bool: ...

    def create_run(self, run_id: str, created_at: str) -> None: ...

    def append_event(
        self, run_id: str, event_type: str, payload_json: str, timestamp: str
    ) -> int: ...

    def recent_events(self, run_id: str, limit: int) -> list[StoredEvent]: ...

    def save_snapshot(
        self, run_id: str, state_value: str, context_json: str, timestamp: str
    ) -> None: ...

    def load_snapshot(self, run_id: str) -> StoredSnapshot | None: ...

    def latest_run_id(self) -> str | None: ...

    def list_runs(self, limit: int) -> list[tuple[str, str, int]]: ...

    def purge_run(self, run_id: str) -> None: ...


class SqliteLedgerBackend:
    """Ledger tables on a migrated :class:`StateDB`."""

    def __init__(self, db: StateDB) -> None:
        self._db = db

    @classmethod
    def open(cls, path: str | Path) -> SqliteLedgerBackend:
        db = StateDB(path)
        try:
            db.migrate()
        except (StateDBError, sqlite3.Error, OSError) as exc:
            raise LedgerUnavailableError(f"cannot open ledger at {path!s}: {exc}") from exc
        return cls(db)

    @property
    def durable(self) -> bool:
        return True

    @property
    def db(self) -> StateDB:
        return self._db

    def create_run(self, run_id: str, created_at: str) -> None:
        self._db.execute(
            "INSERT OR IGNORE INTO runs (id, created_at) VALUES (?, ?)", (run_id, created_at)
        )

    def append_event(
        self, run_id: str, event_type: str, payload_json: str, timestamp: str
    ) -> int:
        with self._db.transaction(immediate=True) as tx:
            self._db.execute(
                "INSERT OR IGNORE INTO runs (id, created_at) VALUES (?, ?)",
                (run_id, timestamp),
                conn=tx,
            )
            return self._db.insert(
                """
                INSERT INTO event_log (run_id, type, payload_json, timestamp)
                VALUES (?, ?, ?, ?)
                """,
                (run_id, event_type, payload_json, timestamp),
                conn=tx,
            )

    def recent_events(self, run_id: str, limit: int) -> list[StoredEvent]:
        rows = self._db.query_all(
            """
            SELECT id, run_id, payload_json, timestamp
            FROM event_log
            WHERE run_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (run_id, limit),
        )
        stored = [
            StoredEvent(
                monotonic_id=int(row["id"]),  # type: ignore[arg-type]
                run_id=str(row["run_id"]),
                payload_json=str(row["payload_json"]),
                timestamp=str(row["timestamp"]),
            )
            for row in rows
        ]
        stored.reverse()
        return stored

    def save_snapshot(
        self, run_id: str, state_value: str, context_json: str, timestamp: str
    ) -> None:
        with self._db.transaction(immediate=True) as tx:
            self._db.execute(
                "INSERT OR IGNORE INTO runs (id, created_at) VALUES (?, ?)",
                (run_id, timestamp),
                conn=tx,
            )
            self._db.execute(
                """
                INSERT INTO snapshots (run_id, state_value, context_json, timestamp)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    state_value = excluded.state_value,
                    context_json = excluded.context_json,
                    timestamp = excluded.timestamp
                """,
                (run_id, state_value, context_json, timestamp),
                conn=tx,
            )

    def load_snapshot(self, run_id: str) -> StoredSnapshot | None:
        row = self._db.query_one(
            "SELECT run_id, state_value, context_json, timestamp FROM snapshots WHERE run_id = ?",
            (run_id,),
        )
        if row is None:
            return None
        return StoredSnapshot(
            run_id=str(row["run_id"]),
            state_value=str(row["state_value"]),
            context_json=str(row["context_json"]),
            timestamp=str(row["timestamp"]),
        )

    def latest_run_id(self) -> str | None:
        row = self._db.query_one(
            "SELECT id FROM runs ORDER BY created_at DESC, rowid DESC LIMIT 1"
        )
        return None if row is None else str(row["id"])

    def list_runs(self, limit: int) -> list[tuple[str, str, int]]:
        rows = self._db.query_all(
            """
            SELECT runs.id AS id, runs.created_at AS created_at, COUNT(event_log.id) AS events
            FROM runs
            LEFT JOIN event_log ON event_log.run_id = runs.id
            GROUP BY runs.id
            ORDER BY runs.created_at DESC, runs.rowid DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [
            (str(row["id"]), str(row["created_at"]), int(row["events"]))  # type: ignore[arg-type]
            for row in rows
        ]

    def purge_run(self, run_id: str) -> None:
        self._db.execute("DELETE FROM runs WHERE id = ?", (run_id,))


class InMemoryLedgerBackend:
    """Process-local ledger storage; contents are lost on exit."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._runs: dict[str, str] = {}
        self._events: dict[str, list[StoredEvent]] = {}
        self._snapshots: dict[str, StoredSnapshot] = {}

    @property
    def durable(self) -> bool:
        return False

    def create_run(self, run_id: str, created_at: str) -> None:
        self._runs.setdefault(run_id, created_at)

    def append_event(
        self, run_id: str, event_type: str, payload_json: str, timestamp: str
    ) -> int:
        del event_type
        self._runs.setdefault(run_id, timestamp)
        monotonic_id = next(self._ids)
        self._events.setdefault(run_id, []).append(
            StoredEvent(
                monotonic_id=monotonic_id,
                run_id=run_id,
                payload_json=payload_json,
                timestamp=timestamp,
            )
        )
        return monotonic_id

    def recent_events(self, run_id: str, limit: int) -> list[StoredEvent]:
        events = self._events.get(run_id, [])
        return list(events[-limit:]) if limit > 0 else []

    def save_snapshot(
        self, run_id: str, state_value: str, context_json: str, timestamp: str
    ) -> None:
        self._runs.setdefault(run_id, timestamp)
        self._snapshots[run_id] = StoredSnapshot(
            run_id=run_id, state_value=state_value, context_json=context_json, timestamp=timestamp
        )

    def load_snapshot(self, run_id: str) -> StoredSnapshot | None:
        return self._snapshots.get(run_id)

    def latest_run_id(self) -> str | None:
        if not self._runs:
            return None
        # Later insertion wins ties, matching the SQLite rowid tie-break.
        ordered = sorted(enumerate(self._runs.items()), key=lambda item: (item[1][1], item[0]))
        return ordered[-1][1][0]

    def list_runs(self, limit: int) -> list[tuple[str, str, int]]:
        ordered = sorted(
            enumerate(self._runs.items()), key=lambda item: (item[1][1], item[0]), reverse=True
        )
        return [
            (run_id, created_at, len(self._events.get(run_id, [])))
            for _, (run_id, created_at) in ordered[:limit]
        ]

    def purge_run(self, run_id: str) -> None:
        self._runs.pop(run_id, None)
        self._events.pop(run_id, None)
        self._snapshots.pop(run_id, None)


class EventLedger:
    """Async ledger facade. Writes within one run are serialized."""

    def __init__(self, backend: LedgerBackend, *, logger: Any | None = None) -> None:
        self._backend = backend
        self._locks: KeyedLocks[str] = KeyedLocks()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def open(
        cls,
        path: str | Path | None,
        *,
        durable: bool = True,
        logger: Any | None = None,
    ) -> EventLedger:
        """Open the durable backend at ``path``, falling back to memory on failure."""
        log = logger if logger is not None else structlog.get_logger(__name__)
        if not durable or path is None:
            log.info("ledger_opened", backend="memory", durable=False)
            return cls(InMemoryLedgerBackend(), logger=log)
        try:
            backend: LedgerBackend = SqliteLedgerBackend.open(path)
        except LedgerUnavailableError as exc:
            log.warning(
                "ledger_unavailable_fallback_memory", path=str(path), error=str(exc)
            )
            backend = InMemoryLedgerBackend()
        else:
            log.info("ledger_opened", backend="sqlite", path=str(path), durable=True)
        return cls(backend, logger=log)

    @classmethod
    def in_memory(cls, *, logger: Any | None = None) -> EventLedger:
        return cls(InMemoryLedgerBackend(), logger=logger)

    @property
    def durable(self) -> bool:
        return self._backend.durable

    @property
    def backend(self) -> LedgerBackend:
        return self._backend

    async def create_run(self, run_id: str) -> None:
        async with self._locks.get(run_id):
            await self._call(self._backend.create_run, run_id, _iso(utc_now()))

    async def append_event(self, run_id: str, event: RuntimeEvent) -> EventRecord:
        payload = canonical_json(event_to_dict(event))
        timestamp = utc_now()
        async with self._locks.get(run_id):
            monotonic_id = await self._call(
                self._backend.append_event, run_id, event.type.value, payload, _iso(timestamp)
            )
        return EventRecord(
            run_id=run_id, monotonic_id=monotonic_id, event=event, timestamp=timestamp
        )

    async def get_recent_records(
        self, run_id: str, limit: int = DEFAULT_RECENT_EVENTS_LIMIT
    ) -> list[EventRecord]:
        """Most recent ``limit`` records of ``run_id`` in ascending append order."""
        if limit <= 0:
            return []
        stored = await self._call(self._backend.recent_events, run_id, limit)
        records: list[EventRecord] = []
        for row in stored:
            try:
                event = event_from_dict(json.loads(row.payload_json))
            except (ValueError, TypeError) as exc:
                self._logger.warning(
                    "ledger_event_decode_failed",
                    run_id=run_id,
                    monotonic_id=row.monotonic_id,
                    error=str(exc),
                )
                continue
            records.append(
                EventRecord(
                    run_id=row.run_id,
                    monotonic_id=row.monotonic_id,
                    event=event,
                    timestamp=_parse_iso(row.timestamp),
                )
            )
        return records

    async def get_recent_events(
        self, run_id: str, limit: int = DEFAULT_RECENT_EVENTS_LIMIT
    ) -> list[RuntimeEvent]:
        return [record.event for record in await self.get_recent_records(run_id, limit)]

    async def save_snapshot(
        self, run_id: str, state_value: str, context: WorkflowContext
    ) -> Snapshot:
        timestamp = utc_now()
        async with self._locks.get(run_id):
            await self._call(
                self._backend.save_snapshot,
                run_id,
                state_value,
                canonical_json(context.to_dict()),
                _iso(timestamp),
            )
        return Snapshot(
            run_id=run_id, state_value=state_value, context=context, timestamp=timestamp
        )

    async def load_latest_snapshot(self, run_id: str) -> Snapshot | None:
        stored = await self._call(self._backend.load_snapshot, run_id)
        if stored is None:
            return None
        try:
            context = WorkflowContext.from_dict(json.loads(stored.context_json))
        except (ValueError, TypeError) as exc:
            self._logger.warning("ledger_snapshot_decode_failed", run_id=run_id, error=str(exc))
            return None
        return Snapshot(
            run_id=stored.run_id,
            state_value=stored.state_value,
            context=context,
            timestamp=_parse_iso(stored.timestamp),
        )

    async def latest_run_id(self) -> str | None:
        return await self._call(self._backend.latest_run_id)

    async def list_runs(self, limit: int = 20) -> list[RunSummary]:
        rows = await self._call(self._backend.list_runs, limit)
        return [
            RunSummary(run_id=run_id, created_at=_parse_iso(created_at), event_count=count)
            for run_id, created_at, count in rows
        ]

    async def purge_run(self, run_id: str) -> None:
        async with self._locks.get(run_id):
            await self._call(self._backend.purge_run, run_id)
        self._locks.discard(run_id)
        self._logger.info("ledger_run_purged", run_id=run_id)

    async def _call(self, func: Callable[..., T], *args: object) -> T:
        if self._backend.durable:
            return await asyncio.to_thread(func, *args)
        return func(*args)


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


__all__ = [
    "DEFAULT_RECENT_EVENTS_LIMIT",
    "EventLedger",
    "InMemoryLedgerBackend",
    "LedgerBackend",
    "RunSummary",
    "SqliteLedgerBackend",
    "StoredEvent",
    "StoredSnapshot",
]
