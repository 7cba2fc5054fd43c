"""
shellgate: unit tests for the per-run event channel

File: tests/unit/observability/test_events.py

Purpose
- Validate persist-before-deliver ordering, filtering, replay and failure isolation.

Non-functional requirements
- No sleep-based synchronization.
"""

from __future__ import annotations

import asyncio

import pytest

from shellgate.domain.events import (
    EventHeader,
    EventType,
    ProcessExited,
    RuntimeEvent,
    StdoutChunk,
)
from shellgate.errors import LedgerUnavailableError
from shellgate.observability.events import EventChannel
from shellgate.persistence.ledger import EventLedger


def _chunk(text: str) -> StdoutChunk:
    return StdoutChunk(header=EventHeader.now("run-e", "cor-1"), content=text)


class _BrokenLedger(EventLedger):
    async def append_event(self, run_id: str, event: RuntimeEvent):  # type: ignore[no-untyped-def]
        raise LedgerUnavailableError("disk gone")


async def test_subscribers_see_events_after_they_are_persisted() -> None:
    ledger = EventLedger.in_memory()
    channel = EventChannel(ledger, "run-e")
    seen_in_ledger: list[int] = []

    async def _subscriber(event: RuntimeEvent) -> None:
        seen_in_ledger.append(len(await ledger.get_recent_events("run-e")))

    channel.subscribe(_subscriber)
    await ledger.create_run("run-e")

    first = await channel.publish(_chunk("a"))
    await channel.publish(_chunk("b"))

    assert seen_in_ledger == [1, 2]
    assert first is not None
    assert first.monotonic_id >= 1


async def test_concurrent_publishers_share_one_order() -> None:
    ledger = EventLedger.in_memory()
    channel = EventChannel(ledger, "run-e")
    delivered: list[str] = []
    channel.subscribe(lambda event: delivered.append(event.content))  # type: ignore[union-attr]
    await ledger.create_run("run-e")

    await asyncio.gather(*(channel.publish(_chunk(str(i))) for i in range(50)))

    persisted = await ledger.get_recent_events("run-e", limit=100)
    assert [e.content for e in persisted] == delivered  # type: ignore[union-attr]
    assert sorted(delivered, key=int) == [str(i) for i in range(50)]


async def test_type_filter_and_unsubscribe() -> None:
    channel = EventChannel(EventLedger.in_memory(), "run-e")
    exits: list[RuntimeEvent] = []
    token = channel.subscribe(exits.append, EventType.PROCESS_EXITED)

    await channel.publish(_chunk("a"))
    await channel.publish(ProcessExited(header=EventHeader.now("run-e"), code=0))
    assert channel.unsubscribe(token)
    assert not channel.unsubscribe(token)
    await channel.publish(ProcessExited(header=EventHeader.now("run-e"), code=1))

    assert [e.code for e in exits] == [0]  # type: ignore[union-attr]


async def test_failing_subscriber_does_not_block_others() -> None:
    channel = EventChannel(EventLedger.in_memory(), "run-e")
    received: list[RuntimeEvent] = []

    def _boom(event: RuntimeEvent) -> None:
        raise RuntimeError("subscriber bug")

    channel.subscribe(_boom)
    channel.subscribe(received.append)

    await channel.publish(_chunk("a"))

    assert len(received) == 1
    (error,) = channel.dispatch_errors()
    assert (error.stage, error.error_type, error.message) == (
        "subscriber",
        "RuntimeError",
        "subscriber bug",
    )
    assert error.target.endswith("_boom")


async def test_persistence_failure_is_recorded_and_event_still_delivered() -> None:
    channel = EventChannel(_BrokenLedger.in_memory(), "run-e")
    received: list[RuntimeEvent] = []
    channel.subscribe(received.append)

    assert await channel.publish(_chunk("a")) is None

    assert len(received) == 1
    assert [e.stage for e in channel.dispatch_errors()] == ["persistence"]


async def test_replay_is_bounded_and_filterable() -> None:
    channel = EventChannel(EventLedger.in_memory(), "run-e", buffer_size=3)
    for text in "abcd":
        await channel.publish(_chunk(text))
    await channel.publish(ProcessExited(header=EventHeader.now("run-e"), code=0))

    assert [type(e).__name__ for e in channel.replay()] == [
        "StdoutChunk",
        "StdoutChunk",
        "ProcessExited",
    ]
    assert [e.content for e in channel.replay(event_type="STDOUT_CHUNK")] == ["c", "d"]  # type: ignore[union-attr]
    assert len(channel.replay(limit=1)) == 1
    assert channel.replay(limit=0) == ()


def test_rejects_bad_arguments() -> None:
    with pytest.raises(ValueError, match="buffer_size"):
        EventChannel(EventLedger.in_memory(), "run-e", buffer_size=0)
    channel = EventChannel(EventLedger.in_memory(), "run-e")
    with pytest.raises(ValueError, match="callable"):
        channel.subscribe("nope")  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        channel.subscribe(print, "NOT_AN_EVENT")
