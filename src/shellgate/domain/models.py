"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import NoReturn

from shellgate.domain.events import RuntimeEvent

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class ParsedCommand:
    """A tokenized command line. Only the command policy tokenizer builds these."""

    original: str
    program: str
    args: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.program, str) or not self.program:
            _fail("ParsedCommand.program", "expected non-empty string")
        object.__setattr__(self, "args", tuple(self.args))
        for index, arg in enumerate(self.args):
            if not isinstance(arg, str):
                _fail(f"ParsedCommand.args[{index}]", "expected string")

    @property
    def argv(self) -> tuple[str, ...]:
        return (self.program, *self.args)

    def to_dict(self) -> dict[str, JSONValue]:
        return {"original": self.original, "program": self.program, "args": list(self.args)}


@dataclass(frozen=True, slots=True)
class WorkflowContext:
    """Mutable-by-replacement context carried by the phase machine."""

    run_id: str
    retries: int = 0
    last_error: str | None = None
    pending_permission_request_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.run_id, str) or not self.run_id:
            _fail("WorkflowContext.run_id", "expected non-empty string")
        if isinstance(self.retries, bool) or not isinstance(self.retries, int):
            _fail("WorkflowContext.retries", "expected integer")
        if self.retries < 0:
            _fail("WorkflowContext.retries", "must be >= 0")

    def evolve(self, **changes: object) -> WorkflowContext:
        return replace(self, **changes)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "retries": self.retries,
            "last_error": self.last_error,
            "pending_permission_request_id": self.pending_permission_request_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkflowContext:
        if not isinstance(data, Mapping):
            _fail("WorkflowContext", f"expected object, got {type(data).__name__}")
        allowed = {"run_id", "retries", "last_error", "pending_permission_request_id"}
        unknown = sorted(str(key) for key in data if key not in allowed)
        if unknown:
            _fail("WorkflowContext", f"unexpected fields: {unknown}")
        run_id = data.get("run_id")
        if not isinstance(run_id, str):
            _fail("WorkflowContext.run_id", "expected string")
        retries = data.get("retries", 0)
        if isinstance(retries, bool) or not isinstance(retries, int):
            _fail("WorkflowContext.retries", "expected integer")
        return cls(
            run_id=run_id,
            retries=retries,
            last_error=_as_optional_str(data.get("last_error"), "WorkflowContext.last_error"),
            pending_permission_request_id=_as_optional_str(
                data.get("pending_permission_request_id"),
                "WorkflowContext.pending_permission_request_id",
            ),
        )


@dataclass(frozen=True, slots=True)
class EventRecord:
    """One persisted event. ``monotonic_id`` orders replay within a run."""

    run_id: str
    monotonic_id: int
    event: RuntimeEvent
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Latest persisted phase-machine state for a run."""

    run_id: str
    state_value: str
    context: WorkflowContext
    timestamp: datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        _fail(path, "expected string or null")
    return value


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


__all__ = [
    "EventRecord",
    "JSONValue",
    "ParsedCommand",
    "RiskLevel",
    "Snapshot",
    "WorkflowContext",
    "utc_now",
]
