"""
shellgate: configuration schema and validation.

Purpose
- Define the built-in defaults for every runtime section.
- Validate payloads against a declarative rule table and report issues by dotted path.

Behavior
- Unknown keys are rejected; keys that look like credentials get a dedicated message.
- Program lists must hold bare names and are returned de-duplicated and sorted.
- ``schema_version`` mismatches carry upgrade guidance instead of a bare error.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from shellgate.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_ANALYZE_DELAY_SECONDS,
    DEFAULT_AUTO_FIX_DELAY_SECONDS,
    DEFAULT_LEDGER_PATH,
    DEFAULT_LOG_DIR,
    DEFAULT_MAX_AUTOFIX_RETRIES,
    DEFAULT_MAX_BUILD_RETRIES,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_PROCESS_TIMEOUT_SECONDS,
    DEFAULT_RETRY_DELAY_SECONDS,
    MAX_COMMAND_LENGTH,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

REDACTED: Final[str] = "<redacted>"

_PROGRAM_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials"}
)
_SENSITIVE_COMPOUNDS: Final[tuple[str, ...]] = (
    "apikey",
    "accesstoken",
    "clientsecret",
    "privatekey",
)

# Relative values are resolved against the directory holding the config file.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("runtime", "workspace_root"),
    ("ledger", "path"),
    ("observability", "log_dir"),
)

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


class MetaConfig(TypedDict):
    schema_version: int


class RuntimeConfig(TypedDict):
    workspace_root: str


class PolicyConfig(TypedDict):
    max_command_length: int
    extra_safe_programs: list[str]
    extra_denied_programs: list[str]
    extra_permission_programs: list[str]


class ProcessConfig(TypedDict):
    timeout_seconds: float
    max_output_bytes: int
    inherit_host_env: bool


class AutofixConfig(TypedDict):
    max_retries: int
    retry_delay_seconds: float


class WorkflowConfig(TypedDict):
    max_build_retries: int
    analyze_delay_seconds: float
    auto_fix_delay_seconds: float


class LedgerConfig(TypedDict):
    path: str
    durable: bool


class ObservabilityConfig(TypedDict):
    log_level: str
    log_dir: str
    log_to_stdout: bool


class ShellgateConfig(TypedDict):
    meta: MetaConfig
    runtime: RuntimeConfig
    policy: PolicyConfig
    process: ProcessConfig
    autofix: AutofixConfig
    workflow: WorkflowConfig
    ledger: LedgerConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[ShellgateConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "runtime": {
        "workspace_root": ".",
    },
    "policy": {
        "max_command_length": MAX_COMMAND_LENGTH,
        "extra_safe_programs": [],
        "extra_denied_programs": [],
        "extra_permission_programs": [],
    },
    "process": {
        "timeout_seconds": DEFAULT_PROCESS_TIMEOUT_SECONDS,
        "max_output_bytes": DEFAULT_MAX_OUTPUT_BYTES,
        "inherit_host_env": False,
    },
    "autofix": {
        "max_retries": DEFAULT_MAX_AUTOFIX_RETRIES,
        "retry_delay_seconds": DEFAULT_RETRY_DELAY_SECONDS,
    },
    "workflow": {
        "max_build_retries": DEFAULT_MAX_BUILD_RETRIES,
        "analyze_delay_seconds": DEFAULT_ANALYZE_DELAY_SECONDS,
        "auto_fix_delay_seconds": DEFAULT_AUTO_FIX_DELAY_SECONDS,
    },
    "ledger": {
        "path": str(DEFAULT_LEDGER_PATH),
        "durable": True,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": str(DEFAULT_LOG_DIR),
        "log_to_stdout": False,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


FieldKind = Literal["schema", "int", "float", "bool", "path", "level", "programs"]


class _Invalid(Exception):
    def __init__(self, message: str, *, suffix: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.suffix = suffix


@dataclass(frozen=True, slots=True)
class FieldRule:
    """How one config field is type-checked and normalized.

    ``minimum`` bounds numeric kinds; ``exclusive`` turns it into a strict bound.
    """

    kind: FieldKind
    minimum: float | None = None
    exclusive: bool = False

    def check(self, value: object, path: str, issues: list[ConfigValidationIssue]) -> object:
        try:
            return _CHECKERS[self.kind](value, self)
        except _Invalid as exc:
            issues.append(ConfigValidationIssue(path=path + exc.suffix, message=exc.message))
            return None


SECTION_RULES: Final[Mapping[str, Mapping[str, FieldRule]]] = {
    "meta": {"schema_version": FieldRule("schema", minimum=1)},
    "runtime": {"workspace_root": FieldRule("path")},
    "policy": {
        "max_command_length": FieldRule("int", minimum=1),
        "extra_safe_programs": FieldRule("programs"),
        "extra_denied_programs": FieldRule("programs"),
        "extra_permission_programs": FieldRule("programs"),
    },
    "process": {
        "timeout_seconds": FieldRule("float", minimum=0, exclusive=True),
        "max_output_bytes": FieldRule("int", minimum=1),
        "inherit_host_env": FieldRule("bool"),
    },
    "autofix": {
        "max_retries": FieldRule("int", minimum=0),
        "retry_delay_seconds": FieldRule("float", minimum=0),
    },
    "workflow": {
        "max_build_retries": FieldRule("int", minimum=1),
        "analyze_delay_seconds": FieldRule("float", minimum=0),
        "auto_fix_delay_seconds": FieldRule("float", minimum=0),
    },
    "ledger": {"path": FieldRule("path"), "durable": FieldRule("bool")},
    "observability": {
        "log_level": FieldRule("level"),
        "log_dir": FieldRule("path"),
        "log_to_stdout": FieldRule("bool"),
    },
}


def default_config() -> ShellgateConfig:
    """Return a fresh copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade shellgate.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the shellgate runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is modified."""

    merged: dict[str, Any] = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping):
            merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate ``config`` against ``SECTION_RULES`` and return normalized values."""

    issues: list[ConfigValidationIssue] = []
    if not isinstance(config, Mapping):
        issues.append(
            ConfigValidationIssue("<root>", f"expected object, got {type(config).__name__}")
        )
        return ConfigValidationResult(config=None, issues=tuple(issues))

    _check_keys(config, SECTION_RULES, "", issues)
    normalized: dict[str, Any] = {}
    for section in sorted(SECTION_RULES):
        raw = config.get(section)
        if raw is None:
            continue
        if not isinstance(raw, Mapping):
            issues.append(
                ConfigValidationIssue(section, f"expected object, got {type(raw).__name__}")
            )
            continue
        rules = SECTION_RULES[section]
        _check_keys(raw, rules, section, issues)
        values: dict[str, Any] = {}
        for key in sorted(rules):
            if key in raw:
                parsed = rules[key].check(raw[key], f"{section}.{key}", issues)
                if parsed is not None:
                    values[key] = parsed
        normalized[section] = values

    _check_program_overlap(normalized.get("policy", {}), issues)
    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a key-sorted copy with credential-looking values masked."""

    if not isinstance(config, Mapping):
        return {}
    return _redact(config)


def _check_keys(
    payload: Mapping[str, object],
    expected: Mapping[str, object],
    path: str,
    issues: list[ConfigValidationIssue],
) -> None:
    for key in sorted(str(key) for key in payload if key not in expected):
        message = (
            "embedded secret values are forbidden in config"
            if _looks_sensitive_key(key)
            else "unknown field"
        )
        issues.append(ConfigValidationIssue(_join(path, key), message))
    for key in sorted(key for key in expected if key not in payload):
        issues.append(ConfigValidationIssue(_join(path, key), "missing required field"))


def _check_program_overlap(
    policy: Mapping[str, Any], issues: list[ConfigValidationIssue]
) -> None:
    overlap = set(policy.get("extra_safe_programs", ())) & set(
        policy.get("extra_denied_programs", ())
    )
    if overlap:
        issues.append(
            ConfigValidationIssue(
                "policy.extra_safe_programs",
                f"programs cannot be both safe and denied: {sorted(overlap)}",
            )
        )


def _integer(value: object, rule: FieldRule) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise _Invalid(f"expected integer, got {type(value).__name__}")
    _enforce_minimum(value, rule)
    return value


def _number(value: object, rule: FieldRule) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _Invalid(f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise _Invalid("must be finite")
    _enforce_minimum(parsed, rule)
    return parsed


def _enforce_minimum(value: float, rule: FieldRule) -> None:
    if rule.minimum is None:
        return
    if rule.exclusive and value <= rule.minimum:
        raise _Invalid(f"must be > {rule.minimum:g}")
    if value < rule.minimum:
        raise _Invalid(f"must be >= {rule.minimum:g}")


def _schema(value: object, rule: FieldRule) -> int:
    version = _integer(value, rule)
    if version != ConfigSchemaVersion:
        raise _Invalid(migration_guidance(version))
    return version


def _boolean(value: object, rule: FieldRule) -> bool:
    if not isinstance(value, bool):
        raise _Invalid(f"expected boolean, got {type(value).__name__}")
    return value


def _text(value: object, rule: FieldRule) -> str:
    if not isinstance(value, str):
        raise _Invalid(f"expected string, got {type(value).__name__}")
    stripped = value.strip()
    if not stripped:
        raise _Invalid("must not be empty")
    if "\x00" in stripped:
        raise _Invalid("must not contain NUL bytes")
    return stripped


def _level(value: object, rule: FieldRule) -> str:
    level = _text(value, rule).upper()
    if level not in LOG_LEVELS:
        raise _Invalid(f"invalid value {value!r}; expected one of: {', '.join(LOG_LEVELS)}")
    return level


def _programs(value: object, rule: FieldRule) -> list[str]:
    if not isinstance(value, (list, tuple)):
        raise _Invalid(f"expected list of program names, got {type(value).__name__}")
    names: set[str] = set()
    for index, item in enumerate(value):
        name = item.strip() if isinstance(item, str) else ""
        if not _PROGRAM_NAME.fullmatch(name):
            raise _Invalid(
                "must be a bare program name without path separators", suffix=f"[{index}]"
            )
        names.add(name)
    return sorted(names)


_CHECKERS: Final[dict[str, Callable[[object, FieldRule], object]]] = {
    "schema": _schema,
    "int": _integer,
    "float": _number,
    "bool": _boolean,
    "path": _text,
    "level": _level,
    "programs": _programs,
}


def _looks_sensitive_key(key: str) -> bool:
    words = [word for word in _NON_ALNUM.split(_CAMEL_BOUNDARY.sub(r"\1_\2", key).lower()) if word]
    joined = "".join(words)
    return any(word in _SENSITIVE_WORDS for word in words) or any(
        compound in joined for compound in _SENSITIVE_COMPOUNDS
    )


def _redact(value: object) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if _looks_sensitive_key(str(key)) else _redact(item)
            for key, item in sorted(value.items())
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "FieldRule",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "REDACTED",
    "SECTION_RULES",
    "ShellgateConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
