"""
shellgate: unit tests for observability logging

File: tests/unit/observability/test_logging.py

Purpose
- Validate structured JSON logging with redaction, correlation metadata, structlog
  routing and queue-backed reliability.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from shellgate.observability.logging import (
    LoggingConfig,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


def _logger_name() -> str:
    return f"shellgate.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_json_logging_redacts_secrets_and_keeps_correlation(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-redaction", base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(correlation_id="cor-123"):
        logger.info(
            "payload token=tok-FAKE and api_key=sk-FAKE123456789012345",
            extra={"nested": {"password": "hunter2", "safe": "ok"}},
        )

    shutdown_logging(handle)

    (first,) = _read_json_lines(handle.log_path)
    assert first["run_id"] == "run-redaction"
    assert first["correlation_id"] == "cor-123"
    assert first["fields"] == {"nested": {"password": "***REDACTED***", "safe": "ok"}}
    line = handle.log_path.read_text(encoding="utf-8")
    assert "tok-FAKE" not in line
    assert "sk-FAKE" not in line
    assert "hunter2" not in line


def test_structlog_events_land_in_the_run_log(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_logging(
        {"log_level": "INFO", "log_dir": str(tmp_path)},
        run_id="run-structlog",
        logger_name=logger_name,
    )
    log = structlog.get_logger(logger_name)

    with structlog.contextvars.bound_contextvars(correlation_id="cor-9"):
        log.info("command_denied", rule="denied_program", argv=["rm", "-rf", "/"])
    log.debug("policy_decision", command="ls")

    shutdown_logging(handle)

    (record,) = _read_json_lines(tmp_path / "run-structlog" / "shellgate.jsonl")
    assert record["event"] == "command_denied"
    assert record["level"] == "INFO"
    assert record["correlation_id"] == "cor-9"
    assert record["fields"] == {"rule": "denied_program", "argv": ["rm", "-rf", "/"]}


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-threaded", base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    def worker(thread_idx: int) -> None:
        for i in range(40):
            logger.info("thread=%s index=%s", thread_idx, i)

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    shutdown_logging(handle)

    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) + handle.dropped_records == 8 * 40
    assert all(item["run_id"] == "run-threaded" for item in parsed)


def test_new_setup_replaces_the_active_handle(tmp_path: Path) -> None:
    first = setup_structured_logging(
        LoggingConfig(run_id="run-a", base_log_dir=tmp_path, logger_name=_logger_name())
    )
    second = setup_structured_logging(
        LoggingConfig(run_id="run-b", base_log_dir=tmp_path, logger_name=_logger_name())
    )

    assert first.is_shutdown
    assert get_active_logging_handle() is second
    shutdown_logging()
    assert second.is_shutdown
    assert get_active_logging_handle() is None


@pytest.mark.parametrize(
    ("changes", "message"),
    [
        ({"run_id": " "}, "run_id must not be empty"),
        ({"log_filename": "a/b.jsonl"}, "path separators"),
        ({"queue_size": 0}, "queue_size"),
        ({"level": "LOUD"}, "unsupported logging level"),
    ],
)
def test_invalid_logging_config(tmp_path: Path, changes: dict[str, object], message: str) -> None:
    config = {"run_id": "run-x", "base_log_dir": tmp_path, **changes}

    with pytest.raises(ValueError, match=message):
        setup_structured_logging(LoggingConfig(**config))  # type: ignore[arg-type]


def test_default_redactor_masks_bearer_tokens() -> None:
    assert default_log_redactor("send Bearer abc.def now") == "send Bearer ***REDACTED*** now"
    assert default_log_redactor({"cookie": "c"}) == {"cookie": "***REDACTED***"}
    assert default_log_redactor(["plain", 3]) == ["plain", 3]
