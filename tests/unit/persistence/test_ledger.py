"""
shellgate: unit tests for the event ledger

File: tests/unit/persistence/test_ledger.py

Purpose
- Validate append ordering, snapshots, run bookkeeping and the in-memory fallback.

What this test file should cover
- Append order under concurrent appends for the same run.
- Snapshot replace-on-save and decode tolerance.
- Durable backend survives reopen; unusable paths fall back to memory.
"""

from __future__ import annotations

import asyncio
import random
from pathlib import Path

import pytest

from shellgate.domain.events import EventHeader, StdoutChunk, SysReady
from shellgate.domain.models import WorkflowContext
from shellgate.persistence.ledger import EventLedger


def _chunk(run_id: str, text: str) -> StdoutChunk:
    return StdoutChunk(header=EventHeader.now(run_id, "cor-1"), content=text)


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request: pytest.FixtureRequest, tmp_path: Path) -> EventLedger:
    if request.param == "memory":
        return EventLedger.in_memory()
    return EventLedger.open(tmp_path / "state" / "ledger.sqlite3")


async def test_concurrent_appends_read_back_in_append_order(ledger: EventLedger) -> None:
    rng = random.Random(7)
    await ledger.create_run("run-a")

    async def _append(index: int) -> int:
        for _ in range(rng.randint(0, 3)):
            await asyncio.sleep(0)
        record = await ledger.append_event("run-a", _chunk("run-a", f"line-{index}"))
        return record.monotonic_id

    ids = await asyncio.gather(*(_append(i) for i in range(40)))

    records = await ledger.get_recent_records("run-a", limit=100)
    assert [r.monotonic_id for r in records] == sorted(ids)
    assert len(set(ids)) == 40
    by_id = dict(zip(ids, range(40), strict=True))
    assert [r.event.content for r in records] == [  # type: ignore[union-attr]
        f"line-{by_id[r.monotonic_id]}" for r in records
    ]


async def test_recent_events_limit_keeps_newest(ledger: EventLedger) -> None:
    for index in range(5):
        await ledger.append_event("run-b", _chunk("run-b", str(index)))

    events = await ledger.get_recent_events("run-b", limit=2)

    assert [e.content for e in events] == ["3", "4"]  # type: ignore[union-attr]
    assert await ledger.get_recent_events("run-b", limit=0) == []
    assert await ledger.get_recent_events("run-unknown") == []


async def test_runs_are_isolated_and_listed(ledger: EventLedger) -> None:
    await ledger.create_run("run-1")
    await ledger.create_run("run-1")
    await ledger.append_event("run-1", SysReady(header=EventHeader.now("run-1"), run_id="run-1"))
    await ledger.append_event("run-2", _chunk("run-2", "x"))

    runs = {summary.run_id: summary.event_count for summary in await ledger.list_runs()}

    assert runs == {"run-1": 1, "run-2": 1}
    assert await ledger.latest_run_id() == "run-2"
    assert len(await ledger.get_recent_events("run-1")) == 1


async def test_snapshot_replaces_previous(ledger: EventLedger) -> None:
    assert await ledger.load_latest_snapshot("run-s") is None

    await ledger.save_snapshot("run-s", "planning", WorkflowContext(run_id="run-s"))
    await ledger.save_snapshot(
        "run-s",
        "building.analyzing_error",
        WorkflowContext(run_id="run-s", retries=2, last_error="boom"),
    )

    snapshot = await ledger.load_latest_snapshot("run-s")
    assert snapshot is not None
    assert snapshot.state_value == "building.analyzing_error"
    assert snapshot.context.retries == 2
    assert snapshot.context.last_error == "boom"


async def test_purge_removes_everything(ledger: EventLedger) -> None:
    await ledger.append_event("run-p", _chunk("run-p", "x"))
    await ledger.save_snapshot("run-p", "idle", WorkflowContext(run_id="run-p"))

    await ledger.purge_run("run-p")

    assert await ledger.get_recent_events("run-p") == []
    assert await ledger.load_latest_snapshot("run-p") is None
    assert await ledger.latest_run_id() is None


async def test_durable_ledger_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / "ledger.sqlite3"
    first = EventLedger.open(path)
    await first.append_event("run-d", _chunk("run-d", "persisted"))
    await first.save_snapshot("run-d", "reviewing", WorkflowContext(run_id="run-d", retries=1))

    second = EventLedger.open(path)

    assert second.durable
    events = await second.get_recent_events("run-d")
    assert [e.content for e in events] == ["persisted"]  # type: ignore[union-attr]
    snapshot = await second.load_latest_snapshot("run-d")
    assert snapshot is not None
    assert (snapshot.state_value, snapshot.context.retries) == ("reviewing", 1)


async def test_unusable_path_falls_back_to_memory(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")

    ledger = EventLedger.open(blocker / "ledger.sqlite3")

    assert not ledger.durable
    record = await ledger.append_event("run-f", _chunk("run-f", "still recorded"))
    assert record.monotonic_id == 1


def test_non_durable_request_uses_memory(tmp_path: Path) -> None:
    assert not EventLedger.open(tmp_path / "x.sqlite3", durable=False).durable
    assert not EventLedger.open(None).durable
    assert not (tmp_path / "x.sqlite3").exists()


async def test_corrupt_snapshot_loads_as_none(tmp_path: Path) -> None:
    ledger = EventLedger.open(tmp_path / "ledger.sqlite3")
    ledger.backend.save_snapshot("run-c", "idle", "{not json", "2026-01-01T00:00:00.000Z")

    assert await ledger.load_latest_snapshot("run-c") is None
