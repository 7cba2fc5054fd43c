"""
shellgate: unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from shellgate.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_bindings,
    env_overrides,
    load_config,
    normalize_paths,
)
from shellgate.config.schema import ConfigValidationError
from shellgate.constants import DEFAULT_PROCESS_TIMEOUT_SECONDS


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_when_no_file_exists(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config(environ={})

    assert config["process"]["timeout_seconds"] == DEFAULT_PROCESS_TIMEOUT_SECONDS
    assert config["runtime"]["workspace_root"] == tmp_path.resolve().as_posix()
    assert config["ledger"]["path"] == (tmp_path.resolve() / "state/ledger.sqlite3").as_posix()


def test_precedence_cli_over_env_over_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "shellgate.toml",
        """
[process]
timeout_seconds = 30.0
max_output_bytes = 2048

[autofix]
max_retries = 1
""",
    )
    environ = {
        "SHELLGATE_PROCESS_TIMEOUT_SECONDS": "45",
        "SHELLGATE_AUTOFIX_MAX_RETRIES": "2",
    }

    config = load_config(
        config_path, environ=environ, cli_overrides={"autofix.max_retries": 5, "ignored": None}
    )

    assert config["process"]["max_output_bytes"] == 2048
    assert config["process"]["timeout_seconds"] == 45.0
    assert config["autofix"]["max_retries"] == 5


def test_env_coercion_for_lists_and_booleans(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "shellgate.toml", "")
    environ = {
        "SHELLGATE_POLICY_EXTRA_SAFE_PROGRAMS": "make, cargo ,,make",
        "SHELLGATE_PROCESS_INHERIT_HOST_ENV": "yes",
        "SHELLGATE_OBSERVABILITY_LOG_LEVEL": "debug",
    }

    config = load_config(config_path, environ=environ)

    assert config["policy"]["extra_safe_programs"] == ["cargo", "make"]
    assert config["process"]["inherit_host_env"] is True
    assert config["observability"]["log_level"] == "DEBUG"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("SHELLGATE_AUTOFIX_MAX_RETRIES", "many", "must be an integer"),
        ("SHELLGATE_PROCESS_TIMEOUT_SECONDS", "soon", "must be a number"),
        ("SHELLGATE_LEDGER_DURABLE", "maybe", "must be a boolean"),
    ],
)
def test_bad_env_values_are_reported(tmp_path: Path, name: str, value: str, message: str) -> None:
    config_path = _write_config(tmp_path / "shellgate.toml", "")

    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ={name: value})


def test_paths_normalize_relative_to_config_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "conf" / "shellgate.toml",
        """
[runtime]
workspace_root = "../project"

[ledger]
path = "/var/lib/shellgate/ledger.sqlite3"
""",
    )

    config = load_config(config_path, environ={})

    assert config["runtime"]["workspace_root"] == (tmp_path.resolve() / "project").as_posix()
    assert config["ledger"]["path"] == "/var/lib/shellgate/ledger.sqlite3"
    assert config["observability"]["log_dir"] == (tmp_path.resolve() / "conf/logs").as_posix()


def test_normalize_paths_does_not_mutate_input(tmp_path: Path) -> None:
    original = {"runtime": {"workspace_root": "ws"}}

    normalized = normalize_paths(original, base_dir=tmp_path)

    assert original == {"runtime": {"workspace_root": "ws"}}
    assert normalized["runtime"]["workspace_root"] == (tmp_path / "ws").as_posix()


def test_missing_explicit_file_and_invalid_toml(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="not found"):
        load_config(tmp_path / "absent.toml", environ={})

    broken = _write_config(tmp_path / "broken.toml", "[process\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_invalid_file_values_raise_validation_error(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "shellgate.toml",
        """
[process]
timeout_seconds = 0
unknown_knob = 1
""",
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})

    paths = {issue.path for issue in excinfo.value.issues}
    assert paths == {"process.timeout_seconds", "process.unknown_knob"}


def test_dump_is_deterministic_json(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "shellgate.toml", "")

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    assert json.loads(first)["meta"] == {"schema_version": 1}


def test_every_scalar_field_has_one_env_binding() -> None:
    bindings = env_bindings()

    assert bindings["SHELLGATE_LEDGER_DURABLE"].path == ("ledger", "durable")
    assert bindings["SHELLGATE_POLICY_EXTRA_DENIED_PROGRAMS"].dotted == (
        "policy.extra_denied_programs"
    )
    assert "SHELLGATE_META" not in bindings
    assert env_overrides({"SHELLGATE_WORKFLOW_MAX_BUILD_RETRIES": " 4 ", "OTHER": "x"}) == {
        "workflow": {"max_build_retries": 4}
    }
