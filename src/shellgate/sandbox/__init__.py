"""Sandbox plane: shell-free process execution within a workspace root."""

from shellgate.sandbox.process_runner import (
    EventSink,
    ProcessHandle,
    ProcessOutcome,
    ProcessRunner,
)

__all__ = [
    "EventSink",
    "ProcessHandle",
    "ProcessOutcome",
    "ProcessRunner",
]
