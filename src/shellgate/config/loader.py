"""
shellgate: runtime config loader.

Purpose
- Build the effective config from four layers: built-in defaults, ``shellgate.toml``,
  ``SHELLGATE_*`` environment variables and CLI overrides (later layers win).

Behavior
- Every scalar or list field in the defaults has exactly one environment variable,
  named ``SHELLGATE_<SECTION>_<FIELD>``; its text is coerced to the default's type.
- Path fields are resolved relative to the config file's directory.
- The file layer is validated on its own first so file mistakes are reported against
  the file rather than against a later override.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from shellgate.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "shellgate.toml"
ENV_PREFIX: Final[str] = "SHELLGATE_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


@dataclass(frozen=True, slots=True)
class EnvBinding:
    """One ``SHELLGATE_*`` variable and the config field it overrides."""

    name: str
    path: tuple[str, ...]
    coerce: Callable[[str], object]

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    ``config_path`` defaults to ``./shellgate.toml``; a missing default file is
    fine, a missing explicit one is a ``ConfigLoadError``.
    """

    path = _resolve_config_path(config_path)
    file_layer = _read_toml(path, required=config_path is not None)
    config = assert_valid_config(merge_config(default_config(), file_layer))

    env_layer = env_overrides(os.environ if environ is None else environ)
    cli_layer = _dotted_to_nested(cli_overrides or {})
    config = assert_valid_config(merge_config(merge_config(config, env_layer), cli_layer))

    return assert_valid_config(normalize_paths(config, base_dir=path.parent))


def env_bindings() -> dict[str, EnvBinding]:
    """Map every supported environment variable name to its binding."""

    bindings: dict[str, EnvBinding] = {}
    for path, default in _leaf_fields(DEFAULT_CONFIG):
        coerce = _coercer_for(default)
        if coerce is None:
            continue
        name = ENV_PREFIX + "_".join(part.upper() for part in path)
        bindings[name] = EnvBinding(name=name, path=path, coerce=coerce)
    return bindings


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect the nested override payload expressed by ``environ``."""

    overrides: dict[str, Any] = {}
    for name, binding in sorted(env_bindings().items()):
        raw = environ.get(name)
        if raw is None:
            continue
        try:
            value = binding.coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {binding.dotted} {exc}") from exc
        _assign(overrides, binding.path, value)
    return overrides


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Return a copy of ``config`` with path fields made absolute against ``base_dir``."""

    normalized = merge_config({}, config)
    for path in PATH_FIELDS:
        section = normalized.get(path[0])
        if isinstance(section, dict) and isinstance(section.get(path[1]), str):
            section[path[1]] = _absolute(section[path[1]], base_dir)
    return normalized


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Return the redacted form of ``config`` suitable for logs and ``config`` output."""

    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from exc
        return {}
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    try:
        return tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc


def _leaf_fields(
    payload: Mapping[str, Any], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _leaf_fields(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _coercer_for(default: object) -> Callable[[str], object] | None:
    # bool first: it is a subclass of int.
    if isinstance(default, bool):
        return _parse_bool
    if isinstance(default, int):
        return _parse_int
    if isinstance(default, float):
        return _parse_float
    if isinstance(default, str):
        return str
    if isinstance(default, list):
        return _parse_list
    return None


def _parse_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _parse_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise ValueError("must be an integer") from None


def _parse_float(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        raise ValueError("must be a number") from None


def _parse_list(text: str) -> list[str]:
    return [item.strip() for item in text.split(",") if item.strip()]


def _dotted_to_nested(overrides: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for key in sorted(overrides):
        value = overrides[key]
        if value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(nested, path, value)
    return nested


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    node = target
    for part in path[:-1]:
        node = node.setdefault(part, {})
    node[path[-1]] = value


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "EnvBinding",
    "dump_effective_config",
    "effective_config",
    "env_bindings",
    "env_overrides",
    "load_config",
    "normalize_paths",
]
