"""Runtime event definitions and their canonical JSON serialization.

Events are immutable facts. Every variant carries an :class:`EventHeader` plus its
own payload fields; the ``type`` class attribute is the wire tag.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from types import UnionType
from typing import Any, ClassVar, TypeAlias, get_args, get_type_hints


class EventType(StrEnum):
    """Wire tags of the events produced by the runtime."""

    SYS_READY = "SYS_READY"
    PROCESS_STARTED = "PROCESS_STARTED"
    STDOUT_CHUNK = "STDOUT_CHUNK"
    STDERR_CHUNK = "STDERR_CHUNK"
    PROCESS_EXITED = "PROCESS_EXITED"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    PERMISSION_REQUESTED = "PERMISSION_REQUESTED"
    PERMISSION_RESOLVED = "PERMISSION_RESOLVED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    PHASE_CHANGED = "PHASE_CHANGED"
    WORKFLOW_ERROR = "WORKFLOW_ERROR"


class Severity(StrEnum):
    WARN = "warn"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class EventHeader:
    """Routing header shared by every event."""

    session_id: str
    correlation_id: str | None
    timestamp: datetime

    def __post_init__(self) -> None:
        if not isinstance(self.session_id, str) or not self.session_id.strip():
            raise ValueError("EventHeader.session_id must be a non-empty string")
        if self.correlation_id is not None and not isinstance(self.correlation_id, str):
            raise ValueError("EventHeader.correlation_id must be a string or None")
        object.__setattr__(self, "timestamp", _as_utc_datetime(self.timestamp))

    @classmethod
    def now(cls, session_id: str, correlation_id: str | None = None) -> EventHeader:
        return cls(session_id=session_id, correlation_id=correlation_id, timestamp=_utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "correlation_id": self.correlation_id,
            "timestamp": _datetime_to_iso8601z(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: object) -> EventHeader:
        parsed = _expect_object(
            data,
            "EventHeader",
            required={"session_id", "timestamp"},
            optional={"correlation_id"},
        )
        return cls(
            session_id=_as_str(parsed["session_id"], "EventHeader.session_id"),
            correlation_id=_as_optional_str(
                parsed.get("correlation_id"), "EventHeader.correlation_id"
            ),
            timestamp=_as_utc_datetime(parsed["timestamp"]),
        )


@dataclass(frozen=True, slots=True)
class SysReady:
    type: ClassVar[EventType] = EventType.SYS_READY

    header: EventHeader
    run_id: str


@dataclass(frozen=True, slots=True)
class ProcessStarted:
    type: ClassVar[EventType] = EventType.PROCESS_STARTED

    header: EventHeader
    pid: int
    command: str


@dataclass(frozen=True, slots=True)
class StdoutChunk:
    type: ClassVar[EventType] = EventType.STDOUT_CHUNK

    header: EventHeader
    content: str
    truncated: bool = False


@dataclass(frozen=True, slots=True)
class StderrChunk:
    type: ClassVar[EventType] = EventType.STDERR_CHUNK

    header: EventHeader
    content: str
    truncated: bool = False


@dataclass(frozen=True, slots=True)
class ProcessExited:
    type: ClassVar[EventType] = EventType.PROCESS_EXITED

    header: EventHeader
    code: int
    forced: bool = False


@dataclass(frozen=True, slots=True)
class SecurityViolation:
    type: ClassVar[EventType] = EventType.SECURITY_VIOLATION

    header: EventHeader
    policy: str
    attempted_path: str


@dataclass(frozen=True, slots=True)
class PermissionRequested:
    type: ClassVar[EventType] = EventType.PERMISSION_REQUESTED

    header: EventHeader
    request_id: str
    command: str
    risk_level: str
    reason: str = ""


@dataclass(frozen=True, slots=True)
class PermissionResolved:
    type: ClassVar[EventType] = EventType.PERMISSION_RESOLVED

    header: EventHeader
    request_id: str
    granted: bool


@dataclass(frozen=True, slots=True)
class RetryScheduled:
    type: ClassVar[EventType] = EventType.RETRY_SCHEDULED

    header: EventHeader
    attempt: int
    max_attempts: int
    command: str


@dataclass(frozen=True, slots=True)
class PhaseChanged:
    type: ClassVar[EventType] = EventType.PHASE_CHANGED

    header: EventHeader
    state: str
    previous: str | None = None


@dataclass(frozen=True, slots=True)
class WorkflowError:
    type: ClassVar[EventType] = EventType.WORKFLOW_ERROR

    header: EventHeader
    error: str
    severity: Severity
    kind: str = "internal_error"

    def __post_init__(self) -> None:
        object.__setattr__(self, "severity", Severity(self.severity))


RuntimeEvent: TypeAlias = (
    SysReady
    | ProcessStarted
    | StdoutChunk
    | StderrChunk
    | ProcessExited
    | SecurityViolation
    | PermissionRequested
    | PermissionResolved
    | RetryScheduled
    | PhaseChanged
    | WorkflowError
)

EVENT_CLASSES: dict[EventType, type[RuntimeEvent]] = {
    cls.type: cls for cls in get_args(RuntimeEvent)
}


def event_to_dict(event: RuntimeEvent) -> dict[str, Any]:
    """Serialize an event into its wire form ``{"type", "header", **payload}``."""

    out: dict[str, Any] = {"type": event.type.value, "header": event.header.to_dict()}
    for field in dataclasses.fields(event):
        if field.name == "header":
            continue
        value = getattr(event, field.name)
        out[field.name] = value.value if isinstance(value, StrEnum) else value
    return out


def event_to_json(event: RuntimeEvent) -> str:
    return json.dumps(
        event_to_dict(event), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def event_from_dict(data: object) -> RuntimeEvent:
    """Parse the wire form produced by :func:`event_to_dict`."""

    if not isinstance(data, dict):
        raise ValueError(f"RuntimeEvent: expected object, got {type(data).__name__}")
    raw_type = data.get("type")
    try:
        event_type = EventType(raw_type)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in EventType)
        raise ValueError(
            f"RuntimeEvent.type: unsupported event type {raw_type!r}; allowed: {allowed}"
        ) from exc

    cls = EVENT_CLASSES[event_type]
    hints = get_type_hints(cls)
    payload_fields = [field for field in dataclasses.fields(cls) if field.name != "header"]
    required = {
        field.name
        for field in payload_fields
        if field.default is dataclasses.MISSING and field.default_factory is dataclasses.MISSING
    }
    optional = {field.name for field in payload_fields} - required
    path = f"{cls.__name__}"
    parsed = _expect_object(
        data, path, required=required | {"type", "header"}, optional=optional
    )

    kwargs: dict[str, Any] = {"header": EventHeader.from_dict(parsed["header"])}
    for field in payload_fields:
        if field.name in parsed:
            kwargs[field.name] = _coerce_field(
                parsed[field.name], hints[field.name], f"{path}.{field.name}"
            )
    return cls(**kwargs)


def event_from_json(raw: str) -> RuntimeEvent:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"RuntimeEvent: invalid JSON: {exc}") from exc
    return event_from_dict(parsed)


def _coerce_field(value: object, hint: object, path: str) -> object:
    if isinstance(hint, UnionType):
        if value is None and type(None) in get_args(hint):
            return None
        candidates = [arg for arg in get_args(hint) if arg is not type(None)]
        hint = candidates[0]
    if hint is bool:
        if not isinstance(value, bool):
            raise ValueError(f"{path}: expected boolean, got {type(value).__name__}")
        return value
    if hint is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{path}: expected integer, got {type(value).__name__}")
        return value
    if hint is str:
        if not isinstance(value, str):
            raise ValueError(f"{path}: expected string, got {type(value).__name__}")
        return value
    if isinstance(hint, type) and issubclass(hint, StrEnum):
        try:
            return hint(value)
        except ValueError as exc:
            raise ValueError(f"{path}: unsupported value {value!r}") from exc
    raise ValueError(f"{path}: unsupported field type {hint!r}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str],
) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ValueError(f"{path}: expected object, got {type(value).__name__}")

    unknown = sorted(str(key) for key in value if key not in required and key not in optional)
    if unknown:
        raise ValueError(f"{path}: unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in value)
    if missing:
        raise ValueError(f"{path}: missing required fields: {missing}")

    return value


def _as_str(value: object, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{path}: expected non-empty string")
    return value


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_utc_datetime(value: object) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise ValueError(f"invalid ISO-8601 datetime: {value!r}") from exc
    else:
        raise ValueError(f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise ValueError("datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    return _as_utc_datetime(value).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _utc_now() -> datetime:
    return datetime.now(UTC)


__all__ = [
    "EVENT_CLASSES",
    "EventHeader",
    "EventType",
    "PermissionRequested",
    "PermissionResolved",
    "PhaseChanged",
    "ProcessExited",
    "ProcessStarted",
    "RetryScheduled",
    "RuntimeEvent",
    "SecurityViolation",
    "Severity",
    "StderrChunk",
    "StdoutChunk",
    "SysReady",
    "WorkflowError",
    "event_from_dict",
    "event_from_json",
    "event_to_dict",
    "event_to_json",
]
