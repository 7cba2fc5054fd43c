"""Operator permission gate for commands the policy classifies as risky.

A request parks a one-shot continuation holding the argv that was parsed when the
policy decided. Grant, deny and cancel each settle it exactly once; later attempts
are logged no-ops.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import structlog

from shellgate.domain.events import (
    EventHeader,
    PermissionRequested,
    PermissionResolved,
    RuntimeEvent,
)
from shellgate.domain.ids import generate_permission_request_id
from shellgate.domain.models import ParsedCommand, RiskLevel, utc_now
from shellgate.errors import PermissionCancelledError, PermissionDeniedError
from shellgate.policy.command_policy import RequirePermission
from shellgate.policy.tokenizer import join

EventSink = Callable[[RuntimeEvent], Awaitable[None]]


class Resolution(StrEnum):
    GRANTED = "granted"
    DENIED = "denied"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class PendingPermission:
    request_id: str
    correlation_id: str
    parsed: ParsedCommand
    risk_level: RiskLevel
    reason: str
    created_at: datetime
    future: asyncio.Future[Resolution] = field(repr=False)

    @property
    def command(self) -> str:
        return join(self.parsed.argv)


class PermissionGate:
    """Track pending permission requests for one run."""

    def __init__(
        self,
        *,
        session_id: str,
        emit: EventSink,
        logger: Any | None = None,
    ) -> None:
        self._session_id = session_id
        self._emit = emit
        self._pending: dict[str, PendingPermission] = {}
        self._waiters: dict[str, PendingPermission] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def pending(self) -> tuple[PendingPermission, ...]:
        return tuple(sorted(self._pending.values(), key=lambda item: item.created_at))

    def get(self, request_id: str) -> PendingPermission | None:
        return self._pending.get(request_id)

    async def request(self, correlation_id: str, decision: RequirePermission) -> str:
        """Register a pending request and emit ``PERMISSION_REQUESTED``."""

        request_id = generate_permission_request_id()
        future: asyncio.Future[Resolution] = asyncio.get_running_loop().create_future()
        entry = PendingPermission(
            request_id=request_id,
            correlation_id=correlation_id,
            parsed=decision.parsed,
            risk_level=decision.risk_level,
            reason=decision.reason,
            created_at=utc_now(),
            future=future,
        )
        self._pending[request_id] = entry
        self._waiters[request_id] = entry
        self._logger.info(
            "permission_requested",
            request_id=request_id,
            correlation_id=correlation_id,
            risk_level=entry.risk_level.value,
            rule=decision.rule.value,
        )
        await self._emit(
            PermissionRequested(
                header=EventHeader.now(self._session_id, correlation_id),
                request_id=request_id,
                command=entry.command,
                risk_level=entry.risk_level.value,
                reason=entry.reason,
            )
        )
        return request_id

    async def wait(self, request_id: str) -> ParsedCommand:
        """Suspend until the request is settled; return the argv captured at request time."""

        entry = self._waiters.get(request_id)
        if entry is None:
            raise KeyError(f"unknown permission request {request_id}")
        try:
            resolution = await entry.future
        finally:
            self._waiters.pop(request_id, None)
        if resolution is Resolution.GRANTED:
            return entry.parsed
        if resolution is Resolution.DENIED:
            raise PermissionDeniedError(request_id)
        raise PermissionCancelledError(request_id)

    async def resolve(self, request_id: str, granted: bool) -> bool:
        """Grant or deny a pending request. Returns ``False`` when already settled."""

        resolution = Resolution.GRANTED if granted else Resolution.DENIED
        return await self._settle(request_id, resolution)

    async def cancel(self, request_id: str) -> bool:
        return await self._settle(request_id, Resolution.CANCELLED)

    async def cancel_for_correlation(self, correlation_id: str) -> int:
        request_ids = [
            entry.request_id
            for entry in self.pending()
            if entry.correlation_id == correlation_id
        ]
        cancelled = 0
        for request_id in request_ids:
            if await self.cancel(request_id):
                cancelled += 1
        return cancelled

    async def cancel_all(self) -> int:
        cancelled = 0
        for entry in self.pending():
            if await self.cancel(entry.request_id):
                cancelled += 1
        return cancelled

    async def _settle(self, request_id: str, resolution: Resolution) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            self._logger.info(
                "permission_resolve_ignored",
                request_id=request_id,
                resolution=resolution.value,
            )
            return False
        if not entry.future.done():
            entry.future.set_result(resolution)
        self._logger.info(
            "permission_resolved",
            request_id=request_id,
            correlation_id=entry.correlation_id,
            resolution=resolution.value,
        )
        await self._emit(
            PermissionResolved(
                header=EventHeader.now(self._session_id, entry.correlation_id),
                request_id=request_id,
                granted=resolution is Resolution.GRANTED,
            )
        )
        return True


__all__ = ["EventSink", "PendingPermission", "PermissionGate", "Resolution"]
