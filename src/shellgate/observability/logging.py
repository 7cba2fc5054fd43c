"""Per-run JSON-lines logging for shellgate.

Component modules log through ``structlog``. :func:`configure_structlog` hands those
events to the stdlib logger named by :class:`LoggingConfig`, whose only handler is a
bounded queue drained by a ``QueueListener`` thread. The listener writes one redacted
JSON object per line to ``<log_dir>/<run_id>/shellgate.jsonl``. When the queue is
full the record is dropped and counted rather than blocking the caller.

Correlation fields (``run_id``, ``correlation_id``, ``session_id``) live in structlog's
contextvars; :func:`correlation_scope` binds them for plain stdlib loggers too.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

from shellgate.utils.fs import ensure_parent_dir

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
DEFAULT_LOG_FILENAME: Final[str] = "shellgate.jsonl"
DEFAULT_LOGGER_NAME: Final[str] = "shellgate"
DEFAULT_QUEUE_SIZE: Final[int] = 4096

CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "correlation_id", "session_id")

_SECRET_KEY: Final[re.Pattern[str]] = re.compile(
    r"(?i)secret|token|passw(?:or)?d|passphrase|api[_-]?key|authorization|credential"
    r"|cookie|private[_-]?key"
)
_INLINE_SECRETS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(r"(?i)\b(api[_-]?key|token|password|secret|authorization)(\s*[:=]\s*)[^\s,;]+"),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{12,}\b"), REDACTED),
)

# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("shellgate", logging.INFO, __file__, 0, "", (), None))
) | {"message", "asctime", "taskName", "correlation"}

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Where and how one run's log file is written."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = DEFAULT_QUEUE_SIZE
    log_filename: str = DEFAULT_LOG_FILENAME
    log_to_stdout: bool = False
    redactor: LogRedactor | None = None

    def __post_init__(self) -> None:
        for name in ("run_id", "logger_name", "log_filename"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{name} must not be empty")
        if Path(self.log_filename).name != self.log_filename:
            raise ValueError("log_filename must not contain path separators")
        if self.queue_size <= 0:
            raise ValueError("queue_size must be > 0")
        self.numeric_level()

    def numeric_level(self) -> int:
        if isinstance(self.level, int):
            return self.level
        resolved = logging.getLevelNamesMapping().get(str(self.level).strip().upper())
        if resolved is None:
            raise ValueError(f"unsupported logging level {self.level!r}")
        return resolved

    @property
    def log_path(self) -> Path:
        return Path(self.base_log_dir) / self.run_id.strip() / self.log_filename


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Queue handler that never blocks; records that do not fit are counted and dropped."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._drop_lock = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Capture contextvars here; the listener thread formats without them.
        record.correlation = {
            key: str(value)
            for key, value in structlog.contextvars.get_contextvars().items()
            if key in CORRELATION_KEYS and value
        }
        return super().prepare(record)  # type: ignore[no-any-return]

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._drop_lock:
                self.dropped += 1


class JsonLinesFormatter(logging.Formatter):
    """Render a record as one key-sorted JSON object with secrets masked."""

    def __init__(self, *, run_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._run_id = run_id
        self._redact = redactor

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": _as_text(self._redact(record.getMessage())),
            **self._correlation(record),
        }
        extras = {
            key: _jsonable(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in CORRELATION_KEYS and not key.startswith("_")
        }
        if extras:
            line["fields"] = self._redact(extras)
        if record.exc_info:
            line["exception"] = _as_text(self._redact(self.formatException(record.exc_info)))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _correlation(self, record: logging.LogRecord) -> dict[str, JSONValue]:
        fields: dict[str, JSONValue] = {"run_id": self._run_id}
        bound = getattr(record, "correlation", None)
        if isinstance(bound, Mapping):
            fields.update(bound)
        for key in CORRELATION_KEYS:
            value = getattr(record, key, None)
            if isinstance(value, str) and value.strip():
                fields[key] = value.strip()
        return fields


class StructuredLoggingHandle:
    """Owns the queue listener and sinks of one active logging setup."""

    def __init__(
        self,
        *,
        config: LoggingConfig,
        logger: logging.Logger,
        queue_handler: _DroppingQueueHandler,
        sinks: tuple[logging.Handler, ...],
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.run_id = config.run_id.strip()
        self.log_path = config.log_path
        self.logger = logger
        self._queue_handler = queue_handler
        self._sinks = sinks
        self._listener = listener
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        pending = self._queue_handler.queue
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while getattr(pending, "unfinished_tasks", 0) and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


def configure_structlog() -> None:
    """Route ``structlog.get_logger(name)`` loggers into the stdlib logger ``name``."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = DEFAULT_LOGGER_NAME,
) -> StructuredLoggingHandle:
    """Start run logging from an ``[observability]`` config section."""

    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else section.get("log_dir", "logs")
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else "logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(section.get("log_to_stdout", False)),
        )
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Replace any active setup with queue-backed JSON logging for ``config.run_id``."""

    global _active, _atexit_registered

    shutdown_logging()
    level = config.numeric_level()
    ensure_parent_dir(config.log_path)

    formatter = JsonLinesFormatter(
        run_id=config.run_id.strip(), redactor=config.redactor or default_log_redactor
    )
    sinks: list[logging.Handler] = [logging.FileHandler(config.log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        config=config,
        logger=logger,
        queue_handler=queue_handler,
        sinks=tuple(sinks),
        listener=listener,
    )
    with _active_lock:
        _active = handle
        if not _atexit_registered:
            atexit.register(shutdown_logging)
            _atexit_registered = True
    return handle


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Stop the listener and close sinks of ``handle`` (default: the active one)."""

    global _active

    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for every log record emitted inside the block."""

    bound = {key: value.strip() for key, value in fields.items() if value and value.strip()}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys and inline credentials inside strings."""

    if isinstance(value, str):
        for pattern, replacement in _INLINE_SECRETS:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _SECRET_KEY.search(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _as_text(value: JSONValue) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=repr)
    if isinstance(value, Path):
        return value.as_posix()
    return repr(value)


__all__ = [
    "CORRELATION_KEYS",
    "DEFAULT_LOG_FILENAME",
    "JSONScalar",
    "JSONValue",
    "JsonLinesFormatter",
    "LogRedactor",
    "LoggingConfig",
    "REDACTED",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
