"""Output rendering for the shellgate CLI.

Purpose
- Provide a thin plain-text rendering layer for CLI output.
- Respect NO_COLOR environment variable and --no-color CLI flag.
- Render runtime events as terminal lines.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final, TextIO

from shellgate.domain.events import (
    PermissionRequested,
    PermissionResolved,
    PhaseChanged,
    ProcessExited,
    ProcessStarted,
    RetryScheduled,
    RuntimeEvent,
    SecurityViolation,
    Severity,
    StderrChunk,
    StdoutChunk,
    SysReady,
    WorkflowError,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

_RED: Final[str] = "\x1b[31m"
_YELLOW: Final[str] = "\x1b[33m"
_DIM: Final[str] = "\x1b[2m"
_RESET: Final[str] = "\x1b[0m"


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Thin CLI output renderer.

    Produces clean, deterministic plain-text output.
    Respects ``NO_COLOR`` env var and ``--no-color`` flag.
    """

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream
        self._color = _color_allowed(no_color, self._out)

    @property
    def color(self) -> bool:
        return self._color

    @property
    def _out(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._write(line)

    def section(self, title: str) -> None:
        self._write(f"\n{title}")

    def warning(self, text: str) -> None:
        self._write(self._paint(f"  Warning: {text}", _YELLOW))

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._write(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        self._write(f"  {_pad(list(headers))}")
        self._write(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            self._write(f"  {_pad(list(row))}")

    def event(self, event: RuntimeEvent) -> None:
        """Render one runtime event; chatty lifecycle events only when verbose."""

        if isinstance(event, (StdoutChunk, StderrChunk)):
            # Chunks are not line-aligned; write them through unchanged.
            content = event.content
            if isinstance(event, StderrChunk):
                content = self._paint(content, _RED)
            self._out.write(content)
            self._out.flush()
            return
        line = format_event(event, verbose=self.verbose)
        if line is None:
            return
        if isinstance(event, SecurityViolation) or (
            isinstance(event, WorkflowError) and event.severity is Severity.FATAL
        ):
            self._write(self._paint(line, _RED))
        elif isinstance(event, (WorkflowError, PermissionRequested, RetryScheduled)):
            self._write(self._paint(line, _YELLOW))
        elif isinstance(event, (PhaseChanged, SysReady)):
            self._write(self._paint(line, _DIM))
        else:
            self._write(line)

    def _paint(self, text: str, code: str) -> str:
        if not self._color:
            return text
        return f"{code}{text}{_RESET}"

    def _write(self, line: str) -> None:
        out = self._out
        out.write(line.rstrip("\n") + "\n")
        out.flush()


def format_event(event: RuntimeEvent, *, verbose: bool = False) -> str | None:
    """Return the terminal line for ``event``, or ``None`` when it is hidden."""

    if isinstance(event, (StdoutChunk, StderrChunk)):
        return event.content
    if isinstance(event, ProcessStarted):
        return f"$ {event.command}"
    if isinstance(event, ProcessExited):
        suffix = " (killed)" if event.forced else ""
        return f"[exit {event.code}{suffix}]"
    if isinstance(event, SecurityViolation):
        return f"[blocked:{event.policy}] {event.attempted_path}"
    if isinstance(event, PermissionRequested):
        return (
            f"[permission {event.request_id}] {event.risk_level} risk: {event.command}"
            + (f" ({event.reason})" if event.reason else "")
        )
    if isinstance(event, PermissionResolved):
        verdict = "granted" if event.granted else "not granted"
        return f"[permission {event.request_id}] {verdict}"
    if isinstance(event, RetryScheduled):
        return f"[retry {event.attempt}/{event.max_attempts}] {event.command}"
    if isinstance(event, WorkflowError):
        return f"[{event.severity.value}:{event.kind}] {event.error}"
    if not verbose:
        return None
    if isinstance(event, PhaseChanged):
        return f"[phase] {event.previous or '-'} -> {event.state}"
    if isinstance(event, SysReady):
        return f"[ready] run {event.run_id}"
    return None


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, stream: TextIO | None = None
) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer", "format_event"]
