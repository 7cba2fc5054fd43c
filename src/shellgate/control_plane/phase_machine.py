"""Workflow phase state machine with persisted snapshots and delayed transitions.

States::

    idle -> planning -> plan_edit -> building.executing -> reviewing -> gate_ready
         -> deploying (final)

``building`` has four sub-states (executing, waiting_for_permission, analyzing_error,
auto_fixing). A failed build waits ``analyze_delay_seconds`` in analyzing_error, then
either moves to auto_fixing (bounded by ``max_build_retries``) or escalates to
needs_assistance. A cancelled permission request returns waiting_for_permission
to executing. Every state entry and context change is written to the ledger as
a snapshot, so a restarted process resumes where it stopped.

Events are processed one at a time. Delayed transitions carry the state generation
they were armed in and are dropped once that state has been left.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final

import structlog

from shellgate.constants import (
    DEFAULT_ANALYZE_DELAY_SECONDS,
    DEFAULT_AUTO_FIX_DELAY_SECONDS,
    DEFAULT_MAX_BUILD_RETRIES,
)
from shellgate.domain.models import WorkflowContext
from shellgate.persistence.ledger import EventLedger
from shellgate.utils.concurrency import BackgroundTasks, DelayedCall


class PhaseState(StrEnum):
    IDLE = "idle"
    PLANNING = "planning"
    PLAN_EDIT = "plan_edit"
    EXECUTING = "building.executing"
    WAITING_FOR_PERMISSION = "building.waiting_for_permission"
    ANALYZING_ERROR = "building.analyzing_error"
    AUTO_FIXING = "building.auto_fixing"
    REVIEWING = "reviewing"
    GATE_READY = "gate_ready"
    DEPLOYING = "deploying"
    NEEDS_ASSISTANCE = "needs_assistance"

    @property
    def is_building(self) -> bool:
        return self.value.startswith("building.")

    @property
    def is_final(self) -> bool:
        return self is PhaseState.DEPLOYING


class MachineEventType(StrEnum):
    START_PLANNING = "START_PLANNING"
    PLAN_COMPLETE = "PLAN_COMPLETE"
    EDIT_PLAN = "EDIT_PLAN"
    BUILD_SUCCESS = "BUILD_SUCCESS"
    BUILD_ERROR = "BUILD_ERROR"
    APPROVE_DEPLOY = "APPROVE_DEPLOY"
    RETRY = "RETRY"
    RESET = "RESET"
    PERMISSION_REQUIRED = "PERMISSION_REQUIRED"
    PERMISSION_GRANTED = "PERMISSION_GRANTED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    PERMISSION_CANCELLED = "PERMISSION_CANCELLED"


@dataclass(frozen=True, slots=True)
class MachineEvent:
    type: MachineEventType
    message: str | None = None
    request_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", MachineEventType(self.type))
        if self.type is MachineEventType.PERMISSION_REQUIRED and not self.request_id:
            raise ValueError("PERMISSION_REQUIRED requires a request_id")


@dataclass(frozen=True, slots=True)
class MachineSettings:
    max_build_retries: int = DEFAULT_MAX_BUILD_RETRIES
    analyze_delay_seconds: float = DEFAULT_ANALYZE_DELAY_SECONDS
    auto_fix_delay_seconds: float = DEFAULT_AUTO_FIX_DELAY_SECONDS

    def __post_init__(self) -> None:
        if self.max_build_retries < 1:
            raise ValueError("max_build_retries must be >= 1")
        if self.analyze_delay_seconds < 0 or self.auto_fix_delay_seconds < 0:
            raise ValueError("machine delays must be >= 0")


StateListener = Callable[[PhaseState, PhaseState | None, WorkflowContext], Awaitable[None]]

_TRANSITIONS: Final[Mapping[tuple[PhaseState, MachineEventType], PhaseState]] = {
    (PhaseState.IDLE, MachineEventType.START_PLANNING): PhaseState.PLANNING,
    (PhaseState.PLANNING, MachineEventType.PLAN_COMPLETE): PhaseState.PLAN_EDIT,
    (PhaseState.PLANNING, MachineEventType.EDIT_PLAN): PhaseState.PLAN_EDIT,
    (PhaseState.PLAN_EDIT, MachineEventType.PLAN_COMPLETE): PhaseState.EXECUTING,
    (PhaseState.EXECUTING, MachineEventType.BUILD_SUCCESS): PhaseState.REVIEWING,
    (PhaseState.EXECUTING, MachineEventType.BUILD_ERROR): PhaseState.ANALYZING_ERROR,
    (
        PhaseState.WAITING_FOR_PERMISSION,
        MachineEventType.PERMISSION_GRANTED,
    ): PhaseState.EXECUTING,
    (
        PhaseState.WAITING_FOR_PERMISSION,
        MachineEventType.PERMISSION_DENIED,
    ): PhaseState.NEEDS_ASSISTANCE,
    (
        PhaseState.WAITING_FOR_PERMISSION,
        MachineEventType.PERMISSION_CANCELLED,
    ): PhaseState.EXECUTING,
    (PhaseState.REVIEWING, MachineEventType.APPROVE_DEPLOY): PhaseState.GATE_READY,
    (PhaseState.GATE_READY, MachineEventType.APPROVE_DEPLOY): PhaseState.DEPLOYING,
    (PhaseState.NEEDS_ASSISTANCE, MachineEventType.RETRY): PhaseState.EXECUTING,
}


class PhaseStateMachine:
    """Single-writer phase machine for one run."""

    def __init__(
        self,
        run_id: str,
        ledger: EventLedger,
        *,
        settings: MachineSettings | None = None,
        listener: StateListener | None = None,
        logger: Any | None = None,
    ) -> None:
        self._run_id = run_id
        self._ledger = ledger
        self._settings = settings or MachineSettings()
        self._listener = listener
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._state = PhaseState.IDLE
        self._context = WorkflowContext(run_id=run_id)
        self._lock = asyncio.Lock()
        self._generation = 0
        self._timer: DelayedCall | None = None
        self._tasks = BackgroundTasks()
        self._changed = asyncio.Event()

    @property
    def state(self) -> PhaseState:
        return self._state

    @property
    def context(self) -> WorkflowContext:
        return self._context

    @property
    def settings(self) -> MachineSettings:
        return self._settings

    def set_listener(self, listener: StateListener | None) -> None:
        self._listener = listener

    async def restore(self) -> PhaseState:
        """Load the latest snapshot, or persist a fresh ``idle`` one when none exists."""

        async with self._lock:
            snapshot = await self._ledger.load_latest_snapshot(self._run_id)
            state: PhaseState | None = None
            if snapshot is not None:
                try:
                    state = PhaseState(snapshot.state_value)
                except ValueError:
                    self._logger.warning(
                        "phase_snapshot_unknown_state",
                        run_id=self._run_id,
                        state=snapshot.state_value,
                    )
            if snapshot is None or state is None:
                await self._enter(PhaseState.IDLE, WorkflowContext(run_id=self._run_id))
                return self._state

            self._cancel_timer()
            self._generation += 1
            self._state = state
            self._context = snapshot.context
            self._logger.info(
                "phase_restored",
                run_id=self._run_id,
                state=state.value,
                retries=self._context.retries,
            )
            self._arm_timer()
            return self._state

    async def send(self, event: MachineEvent) -> bool:
        """Apply one event. Returns ``False`` when the current state ignores it."""

        async with self._lock:
            return await self._apply(event)

    async def wait_for(self, *states: PhaseState, timeout: float | None = None) -> PhaseState:
        """Wait until the machine is in one of ``states``."""

        async def _wait() -> PhaseState:
            while self._state not in states:
                await self._changed.wait()
            return self._state

        return await asyncio.wait_for(_wait(), timeout)

    async def wait_idle(self) -> None:
        await self._tasks.wait_idle()

    async def aclose(self) -> None:
        self._cancel_timer()
        self._generation += 1
        await self._tasks.cancel_all()

    async def _apply(self, event: MachineEvent) -> bool:
        state = self._state
        context = self._context

        if event.type is MachineEventType.RESET:
            await self._enter(PhaseState.IDLE, WorkflowContext(run_id=self._run_id))
            return True

        if event.type is MachineEventType.PERMISSION_REQUIRED and state.is_building:
            await self._enter(
                PhaseState.WAITING_FOR_PERMISSION,
                context.evolve(pending_permission_request_id=event.request_id),
            )
            return True

        target = _TRANSITIONS.get((state, event.type))
        if target is None:
            self._logger.debug(
                "phase_event_ignored",
                run_id=self._run_id,
                state=state.value,
                event_type=event.type.value,
            )
            return False

        if event.type is MachineEventType.BUILD_ERROR:
            context = context.evolve(last_error=event.message or "build failed")
        elif event.type in (
            MachineEventType.PERMISSION_GRANTED,
            MachineEventType.PERMISSION_DENIED,
            MachineEventType.PERMISSION_CANCELLED,
        ):
            context = context.evolve(pending_permission_request_id=None)
        elif event.type is MachineEventType.RETRY:
            context = context.evolve(retries=0, last_error=None)
        await self._enter(target, context)
        return True

    async def _enter(self, target: PhaseState, context: WorkflowContext) -> None:
        previous = self._state
        self._cancel_timer()
        self._generation += 1
        if target is PhaseState.AUTO_FIXING:
            context = context.evolve(retries=context.retries + 1)
        self._state = target
        self._context = context
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()
        await self._ledger.save_snapshot(self._run_id, target.value, context)
        self._logger.info(
            "phase_changed",
            run_id=self._run_id,
            state=target.value,
            previous=previous.value,
            retries=context.retries,
        )
        if self._listener is not None:
            try:
                await self._listener(target, previous, context)
            except Exception as exc:  # noqa: BLE001
                self._logger.warning(
                    "phase_listener_failed", run_id=self._run_id, error=str(exc)
                )
        self._arm_timer()

    def _arm_timer(self) -> None:
        if self._state is PhaseState.ANALYZING_ERROR:
            delay = self._settings.analyze_delay_seconds
        elif self._state is PhaseState.AUTO_FIXING:
            delay = self._settings.auto_fix_delay_seconds
        else:
            return
        generation = self._generation
        self._timer = DelayedCall(
            delay,
            lambda: self._tasks.spawn(
                self._fire_delayed(generation), name=f"phase-timer-{self._run_id}"
            ),
            generation=generation,
            is_current=lambda value: value == self._generation,
        )

    async def _fire_delayed(self, generation: int) -> None:
        async with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            if self._state is PhaseState.ANALYZING_ERROR:
                failures = self._context.retries + 1
                if failures < self._settings.max_build_retries:
                    await self._enter(PhaseState.AUTO_FIXING, self._context)
                else:
                    self._logger.warning(
                        "phase_build_retries_exhausted",
                        run_id=self._run_id,
                        failures=failures,
                        last_error=self._context.last_error,
                    )
                    await self._enter(PhaseState.NEEDS_ASSISTANCE, self._context)
            elif self._state is PhaseState.AUTO_FIXING:
                await self._enter(PhaseState.EXECUTING, self._context)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


__all__ = [
    "MachineEvent",
    "MachineEventType",
    "MachineSettings",
    "PhaseState",
    "PhaseStateMachine",
    "StateListener",
]
