"""Async concurrency primitives used across the runtime planes."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Hashable
from contextlib import suppress
from typing import Any, Generic, TypeVar

K = TypeVar("K", bound=Hashable)


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return ``True`` if cancelled meanwhile."""
        if self._event.is_set():
            return True
        if seconds <= 0:
            return False
        with suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        return self._event.is_set()


class KeyedLocks(Generic[K]):
    """One ``asyncio.Lock`` per key, created lazily."""

    def __init__(self) -> None:
        self._locks: dict[K, asyncio.Lock] = {}

    def get(self, key: K) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def discard(self, key: K) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class DelayedCall:
    """A cancellable one-shot callback scheduled on the running loop.

    ``generation`` is an opaque token supplied by the owner; the callback only runs
    when ``is_current(generation)`` still holds at fire time.
    """

    def __init__(
        self,
        delay_seconds: float,
        callback: Callable[[], object],
        *,
        generation: int,
        is_current: Callable[[int], bool],
    ) -> None:
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        self._generation = generation
        self._callback = callback
        self._is_current = is_current
        self._fired = False
        self._cancelled = False
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay_seconds, self._fire)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def active(self) -> bool:
        return not (self._fired or self._cancelled)

    def cancel(self) -> None:
        self._cancelled = True
        self._handle.cancel()

    def _fire(self) -> None:
        if self._cancelled or self._fired:
            return
        self._fired = True
        if not self._is_current(self._generation):
            return
        self._callback()


class BackgroundTasks:
    """Tracks fire-and-forget tasks so owners can wait for or cancel them."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coroutine: Coroutine[Any, Any, Any], *, name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coroutine, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        # Tasks may spawn further tasks; loop until nothing is pending.
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)


__all__ = [
    "BackgroundTasks",
    "CancellationToken",
    "DelayedCall",
    "KeyedLocks",
]
