"""Shell-free process execution with streamed output, output caps and tree kill.

Programs are started with ``asyncio.create_subprocess_exec``; argv is handed to the
OS directly and never to a shell interpreter. Each child gets its own session so
the whole process group can be swept on kill.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import psutil
import structlog

from shellgate.constants import (
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_PROCESS_TIMEOUT_SECONDS,
    READ_CHUNK_BYTES,
    STDERR_TAIL_CHARS,
)
from shellgate.domain.events import (
    EventHeader,
    ProcessExited,
    ProcessStarted,
    RuntimeEvent,
    StderrChunk,
    StdoutChunk,
)
from shellgate.domain.models import utc_now
from shellgate.errors import ProcessAlreadyRunningError, ProcessPolicyError, ProcessSpawnError
from shellgate.policy.tokenizer import join
from shellgate.utils.fs import is_within

EventSink = Callable[[RuntimeEvent], Awaitable[None]]

# Reader drain budget once the process tree has been killed.
_DRAIN_AFTER_KILL_SECONDS = 2.0
_PASSTHROUGH_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "SYSTEMROOT")


@dataclass(slots=True)
class ProcessHandle:
    """Live process bookkeeping. At most one per correlation id."""

    correlation_id: str
    pid: int
    started_at: datetime
    process: asyncio.subprocess.Process = field(repr=False)
    stdout_bytes_emitted: int = 0
    stderr_bytes_emitted: int = 0
    killed: bool = False
    timed_out: bool = False
    stderr_tail: str = ""


@dataclass(frozen=True, slots=True)
class ProcessOutcome:
    correlation_id: str
    exit_code: int | None
    timed_out: bool
    killed: bool
    stderr_tail: str
    duration_ms: float

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.killed


class ProcessRunner:
    """Run parsed commands inside a workspace root, one live process per correlation id."""

    def __init__(
        self,
        workspace_root: Path | str,
        *,
        session_id: str,
        timeout_seconds: float = DEFAULT_PROCESS_TIMEOUT_SECONDS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        env_overrides: Mapping[str, str] | None = None,
        inherit_host_env: bool = False,
        logger: Any | None = None,
    ) -> None:
        root = Path(workspace_root).resolve(strict=True)
        if not root.is_dir():
            raise NotADirectoryError(f"{root!s} is not a directory")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be > 0")

        self._workspace_root = root
        self._session_id = session_id
        self._timeout_seconds = float(timeout_seconds)
        self._max_output_bytes = int(max_output_bytes)
        self._env_overrides = dict(env_overrides or {})
        self._inherit_host_env = bool(inherit_host_env)
        self._handles: dict[str, ProcessHandle] = {}
        self._starting: set[str] = set()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    def live_correlation_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._handles))

    def handle(self, correlation_id: str) -> ProcessHandle | None:
        return self._handles.get(correlation_id)

    async def run(
        self,
        correlation_id: str,
        program: str,
        args: Sequence[str] = (),
        *,
        on_event: EventSink,
        cwd: Path | str | None = None,
        timeout_seconds: float | None = None,
    ) -> ProcessOutcome:
        if correlation_id in self._handles or correlation_id in self._starting:
            raise ProcessAlreadyRunningError(
                f"correlation id {correlation_id} already owns a live process"
            )
        resolved_cwd = self._resolve_cwd(cwd)
        effective_timeout = (
            self._timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        )
        if effective_timeout <= 0:
            raise ValueError("timeout_seconds must be > 0")

        argv = [program, *args]
        self._starting.add(correlation_id)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=resolved_cwd,
                env=self._build_environment(),
                start_new_session=os.name == "posix",
            )
        except (OSError, ValueError) as exc:
            self._logger.warning(
                "sandbox_process_spawn_failed",
                correlation_id=correlation_id,
                program=program,
                error=str(exc),
            )
            raise ProcessSpawnError(f"failed to start {program!r}: {exc}") from exc
        finally:
            self._starting.discard(correlation_id)

        handle = ProcessHandle(
            correlation_id=correlation_id,
            pid=process.pid,
            started_at=utc_now(),
            process=process,
        )
        self._handles[correlation_id] = handle
        started = time.perf_counter()
        readers: set[asyncio.Task[None]] = set()
        self._logger.info(
            "sandbox_process_started",
            correlation_id=correlation_id,
            pid=process.pid,
            argv=argv,
            cwd=str(resolved_cwd),
        )

        try:
            await on_event(
                ProcessStarted(
                    header=self._header(correlation_id), pid=process.pid, command=join(argv)
                )
            )
            readers = {
                asyncio.create_task(self._pump(handle, process.stdout, "stdout", on_event)),
                asyncio.create_task(self._pump(handle, process.stderr, "stderr", on_event)),
            }
            waiter = asyncio.create_task(process.wait())
            _, pending = await asyncio.wait({waiter, *readers}, timeout=effective_timeout)
            if pending:
                handle.timed_out = True
                self._logger.warning(
                    "sandbox_process_timeout",
                    correlation_id=correlation_id,
                    pid=process.pid,
                    timeout_seconds=effective_timeout,
                )
                self._kill_tree(handle)
                _, still_pending = await asyncio.wait(pending, timeout=_DRAIN_AFTER_KILL_SECONDS)
                for task in still_pending:
                    task.cancel()
                await asyncio.gather(*still_pending, return_exceptions=True)

            for reader in readers:
                if reader.done() and not reader.cancelled() and reader.exception() is not None:
                    raise reader.exception()  # type: ignore[misc]

            exit_code = process.returncode
            forced = handle.killed or handle.timed_out
            await on_event(
                ProcessExited(
                    header=self._header(correlation_id),
                    code=exit_code if exit_code is not None else -1,
                    forced=forced,
                )
            )
        finally:
            if process.returncode is None:
                self._kill_tree(handle)
                with suppress(ProcessLookupError, TimeoutError):
                    await asyncio.wait_for(process.wait(), timeout=_DRAIN_AFTER_KILL_SECONDS)
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            self._handles.pop(correlation_id, None)

        duration_ms = (time.perf_counter() - started) * 1000.0
        self._logger.info(
            "sandbox_process_exited",
            correlation_id=correlation_id,
            pid=handle.pid,
            exit_code=exit_code,
            timed_out=handle.timed_out,
            killed=handle.killed,
            duration_ms=round(duration_ms, 3),
        )
        return ProcessOutcome(
            correlation_id=correlation_id,
            exit_code=exit_code,
            timed_out=handle.timed_out,
            killed=handle.killed and not handle.timed_out,
            stderr_tail=handle.stderr_tail,
            duration_ms=duration_ms,
        )

    def kill(self, correlation_id: str) -> None:
        """Kill the process tree owned by ``correlation_id``; unknown ids are a no-op."""
        handle = self._handles.get(correlation_id)
        if handle is None:
            self._logger.debug("sandbox_kill_noop", correlation_id=correlation_id)
            return
        self._logger.info("sandbox_process_kill", correlation_id=correlation_id, pid=handle.pid)
        self._kill_tree(handle)

    def kill_all(self) -> None:
        for correlation_id in list(self._handles):
            self.kill(correlation_id)

    async def _pump(
        self,
        handle: ProcessHandle,
        stream: asyncio.StreamReader | None,
        name: str,
        on_event: EventSink,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        chunk_type = StdoutChunk if name == "stdout" else StderrChunk
        emitted = 0
        truncated = False

        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            if truncated:
                continue

            remaining = self._max_output_bytes - emitted
            if len(chunk) > remaining:
                piece = chunk[:remaining]
                emitted += len(piece)
                truncated = True
                text = decoder.decode(piece, final=True) + f"\n... ({name} truncated)"
            else:
                emitted += len(chunk)
                text = decoder.decode(chunk)

            self._account(handle, name, emitted, text)
            if text:
                await on_event(
                    chunk_type(
                        header=self._header(handle.correlation_id),
                        content=text,
                        truncated=truncated,
                    )
                )

        if not truncated:
            tail = decoder.decode(b"", final=True)
            if tail:
                self._account(handle, name, emitted, tail)
                await on_event(
                    chunk_type(header=self._header(handle.correlation_id), content=tail)
                )

    def _account(self, handle: ProcessHandle, name: str, emitted: int, text: str) -> None:
        if name == "stdout":
            handle.stdout_bytes_emitted = emitted
            return
        handle.stderr_bytes_emitted = emitted
        handle.stderr_tail = (handle.stderr_tail + text)[-STDERR_TAIL_CHARS:]

    def _kill_tree(self, handle: ProcessHandle) -> None:
        handle.killed = True
        victims: list[psutil.Process] = []
        if handle.process.returncode is None:
            try:
                parent = psutil.Process(handle.pid)
                victims = [*parent.children(recursive=True), parent]
            except psutil.NoSuchProcess:
                victims = []
        for proc in victims:
            with suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                proc.kill()
        if os.name == "posix":
            # The child leads its own session, so its pid is the process-group id.
            with suppress(ProcessLookupError, PermissionError):
                os.killpg(handle.pid, signal.SIGKILL)

    def _resolve_cwd(self, cwd: Path | str | None) -> Path:
        if cwd is None:
            return self._workspace_root
        candidate = Path(cwd)
        if not candidate.is_absolute():
            candidate = self._workspace_root / candidate
        try:
            path = candidate.resolve(strict=True)
        except FileNotFoundError as exc:
            raise ProcessPolicyError(f"working directory {candidate!s} does not exist") from exc
        if not path.is_dir():
            raise ProcessPolicyError(f"working directory {path!s} is not a directory")
        if not is_within(path, self._workspace_root):
            raise ProcessPolicyError(
                f"working directory {path!s} is outside workspace {self._workspace_root!s}"
            )
        return path

    def _build_environment(self) -> dict[str, str]:
        if self._inherit_host_env:
            merged = dict(os.environ)
        else:
            merged = {key: os.environ[key] for key in _PASSTHROUGH_ENV if key in os.environ}
        merged.update(self._env_overrides)
        return merged

    def _header(self, correlation_id: str) -> EventHeader:
        return EventHeader.now(self._session_id, correlation_id)


__all__ = [
    "EventSink",
    "ProcessHandle",
    "ProcessOutcome",
    "ProcessRunner",
]
