"""Operator and agent intents accepted by the runtime dispatcher."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, ClassVar, TypeAlias


class IntentType(StrEnum):
    EXEC_CMD = "EXEC_CMD"
    CANCEL = "CANCEL"
    GRANT_PERMISSION = "GRANT_PERMISSION"
    DENY_PERMISSION = "DENY_PERMISSION"
    RESET = "RESET"
    PHASE = "PHASE"


class PhaseIntentName(StrEnum):
    """Workflow events an operator may drive the phase machine with."""

    START_PLANNING = "START_PLANNING"
    PLAN_COMPLETE = "PLAN_COMPLETE"
    EDIT_PLAN = "EDIT_PLAN"
    BUILD_SUCCESS = "BUILD_SUCCESS"
    BUILD_ERROR = "BUILD_ERROR"
    APPROVE_DEPLOY = "APPROVE_DEPLOY"
    RETRY = "RETRY"


@dataclass(frozen=True, slots=True)
class ExecCommand:
    type: ClassVar[IntentType] = IntentType.EXEC_CMD

    command: str
    correlation_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.command, str):
            raise ValueError("ExecCommand.command must be a string")


@dataclass(frozen=True, slots=True)
class CancelCommand:
    type: ClassVar[IntentType] = IntentType.CANCEL

    target_correlation_id: str
    correlation_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.target_correlation_id, str) or not self.target_correlation_id:
            raise ValueError("CancelCommand.target_correlation_id must be a non-empty string")


@dataclass(frozen=True, slots=True)
class GrantPermission:
    type: ClassVar[IntentType] = IntentType.GRANT_PERMISSION

    request_id: str
    correlation_id: str | None = None


@dataclass(frozen=True, slots=True)
class DenyPermission:
    type: ClassVar[IntentType] = IntentType.DENY_PERMISSION

    request_id: str
    correlation_id: str | None = None


@dataclass(frozen=True, slots=True)
class Reset:
    type: ClassVar[IntentType] = IntentType.RESET

    correlation_id: str | None = None


@dataclass(frozen=True, slots=True)
class PhaseIntent:
    type: ClassVar[IntentType] = IntentType.PHASE

    name: PhaseIntentName
    message: str | None = None
    correlation_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", PhaseIntentName(self.name))
        if self.name is PhaseIntentName.BUILD_ERROR and not self.message:
            object.__setattr__(self, "message", "build failed")


Intent: TypeAlias = (
    ExecCommand | CancelCommand | GrantPermission | DenyPermission | Reset | PhaseIntent
)


def intent_from_dict(data: object) -> Intent:
    """Parse the wire form ``{"type": ..., ...}`` into an intent instance.

    ``PHASE`` intents may also be sent with their phase name as the type, e.g.
    ``{"type": "START_PLANNING"}``.
    """

    if not isinstance(data, dict):
        raise ValueError(f"Intent: expected object, got {type(data).__name__}")
    raw_type = data.get("type")
    if not isinstance(raw_type, str):
        raise ValueError("Intent.type: expected string")
    correlation_id = _optional_str(data.get("correlation_id"), "Intent.correlation_id")

    if raw_type in PhaseIntentName.__members__:
        return PhaseIntent(
            name=PhaseIntentName(raw_type),
            message=_optional_str(data.get("message"), "PhaseIntent.message"),
            correlation_id=correlation_id,
        )

    try:
        intent_type = IntentType(raw_type)
    except ValueError as exc:
        raise ValueError(f"Intent.type: unsupported intent type {raw_type!r}") from exc

    if intent_type is IntentType.EXEC_CMD:
        return ExecCommand(
            command=_required_str(data, "command", "ExecCommand"),
            correlation_id=correlation_id,
        )
    if intent_type is IntentType.CANCEL:
        return CancelCommand(
            target_correlation_id=_required_str(data, "target_correlation_id", "CancelCommand"),
            correlation_id=correlation_id,
        )
    if intent_type is IntentType.GRANT_PERMISSION:
        return GrantPermission(
            request_id=_required_str(data, "request_id", "GrantPermission"),
            correlation_id=correlation_id,
        )
    if intent_type is IntentType.DENY_PERMISSION:
        return DenyPermission(
            request_id=_required_str(data, "request_id", "DenyPermission"),
            correlation_id=correlation_id,
        )
    if intent_type is IntentType.RESET:
        return Reset(correlation_id=correlation_id)

    raw_name = _required_str(data, "name", "PhaseIntent")
    try:
        name = PhaseIntentName(raw_name)
    except ValueError as exc:
        raise ValueError(f"PhaseIntent.name: unsupported phase intent {raw_name!r}") from exc
    return PhaseIntent(
        name=name,
        message=_optional_str(data.get("message"), "PhaseIntent.message"),
        correlation_id=correlation_id,
    )


def intent_to_dict(intent: Intent) -> dict[str, Any]:
    if isinstance(intent, PhaseIntent):
        out: dict[str, Any] = {"type": intent.type.value, "name": intent.name.value}
        if intent.message is not None:
            out["message"] = intent.message
    elif isinstance(intent, ExecCommand):
        out = {"type": intent.type.value, "command": intent.command}
    elif isinstance(intent, CancelCommand):
        out = {"type": intent.type.value, "target_correlation_id": intent.target_correlation_id}
    elif isinstance(intent, GrantPermission | DenyPermission):
        out = {"type": intent.type.value, "request_id": intent.request_id}
    else:
        out = {"type": intent.type.value}
    if intent.correlation_id is not None:
        out["correlation_id"] = intent.correlation_id
    return out


def _required_str(data: dict[str, object], key: str, path: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{path}.{key}: expected non-empty string")
    return value


def _optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string")
    return value


__all__ = [
    "CancelCommand",
    "DenyPermission",
    "ExecCommand",
    "GrantPermission",
    "Intent",
    "IntentType",
    "PhaseIntent",
    "PhaseIntentName",
    "Reset",
    "intent_from_dict",
    "intent_to_dict",
]
