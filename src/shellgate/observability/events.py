"""Per-run event channel: persist to the ledger, then fan out to subscribers."""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final

import structlog

from shellgate.domain.events import EventType, RuntimeEvent
from shellgate.domain.models import EventRecord
from shellgate.persistence.ledger import EventLedger

Subscriber = Callable[[RuntimeEvent], object]

_DEFAULT_ERROR_BUFFER: Final[int] = 1024


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Persistence/subscriber failure captured without interrupting publishers."""

    stage: str
    event_type: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    event_type: EventType | None
    callback: Subscriber


class EventChannel:
    """Ordered event delivery for one run.

    ``publish`` appends the event to the ledger first and only then hands it to the
    subscribers, in subscription order. Publishing is serialized, so every subscriber
    observes the same order as the ledger. A subscriber must not await ``publish``
    on the same channel.
    """

    def __init__(
        self,
        ledger: EventLedger,
        run_id: str,
        *,
        buffer_size: int = 512,
        logger: Any | None = None,
    ) -> None:
        if not isinstance(buffer_size, int) or buffer_size <= 0:
            raise ValueError("buffer_size must be a positive integer")
        self._ledger = ledger
        self._run_id = run_id
        self._buffer = deque[RuntimeEvent](maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = asyncio.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def ledger(self) -> EventLedger:
        return self._ledger

    def subscribe(self, callback: Subscriber, event_type: EventType | str | None = None) -> int:
        """Subscribe to one event type, or to every event when ``event_type`` is ``None``."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        normalized = EventType(event_type) if event_type is not None else None
        token = self._next_token
        self._next_token += 1
        self._subscriptions[token] = _Subscription(
            token=token, event_type=normalized, callback=callback
        )
        return token

    def unsubscribe(self, token: int) -> bool:
        return self._subscriptions.pop(token, None) is not None

    async def publish(self, event: RuntimeEvent) -> EventRecord | None:
        """Persist ``event`` and deliver it. Returns the ledger record when persisted."""

        async with self._lock:
            record: EventRecord | None = None
            try:
                record = await self._ledger.append_event(self._run_id, event)
            except Exception as exc:  # noqa: BLE001
                self._record_error("persistence", event, "ledger", exc)

            self._buffer.append(event)
            for subscription in tuple(self._subscriptions.values()):
                if subscription.event_type is not None and subscription.event_type != event.type:
                    continue
                try:
                    result = subscription.callback(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as exc:  # noqa: BLE001
                    self._record_error(
                        "subscriber", event, _callback_name(subscription.callback), exc
                    )
            return record

    async def emit(self, event: RuntimeEvent) -> None:
        """``EventSink`` adapter for collaborators that only need fire-and-record."""
        await self.publish(event)

    def replay(
        self,
        *,
        event_type: EventType | str | None = None,
        limit: int | None = None,
    ) -> tuple[RuntimeEvent, ...]:
        """Return buffered events in publish order."""

        normalized = EventType(event_type) if event_type is not None else None
        events = [
            event for event in self._buffer if normalized is None or event.type == normalized
        ]
        if limit is not None:
            if limit <= 0:
                return ()
            events = events[-limit:]
        return tuple(events)

    def dispatch_errors(self, *, limit: int | None = None) -> tuple[DispatchError, ...]:
        errors = tuple(self._dispatch_errors)
        if limit is None:
            return errors
        if limit <= 0:
            return ()
        return errors[-limit:]

    def _record_error(
        self, stage: str, event: RuntimeEvent, target: str, exc: Exception
    ) -> None:
        error = DispatchError(
            stage=stage,
            event_type=event.type.value,
            target=target,
            error_type=type(exc).__name__,
            message=str(exc),
        )
        self._dispatch_errors.append(error)
        self._logger.warning(
            "event_dispatch_failed",
            run_id=self._run_id,
            stage=stage,
            event_type=error.event_type,
            target=target,
            error_type=error.error_type,
            error=error.message,
        )


def _callback_name(callback: Callable[..., object]) -> str:
    module = getattr(callback, "__module__", None)
    qualname = getattr(callback, "__qualname__", None)
    if isinstance(module, str) and isinstance(qualname, str):
        return f"{module}.{qualname}"
    return repr(callback)


__all__ = ["DispatchError", "EventChannel", "Subscriber"]
