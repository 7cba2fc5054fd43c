"""Error taxonomy for the guarded command runtime.

Each class maps to one failure mode the dispatcher reports as a ``WORKFLOW_ERROR``
event. ``kind`` is the stable identifier written into that event.
"""

from __future__ import annotations


class ShellgateError(RuntimeError):
    """Base class for runtime failures."""

    kind = "internal_error"


class TokenizeError(ShellgateError, ValueError):
    """Raised when a raw command line cannot be split into argv."""

    kind = "parse_error"


class PolicyViolationError(ShellgateError):
    """Raised when a command is denied before any process exists."""

    kind = "policy_violation"

    def __init__(self, message: str, *, rule: str) -> None:
        super().__init__(message)
        self.rule = rule


class PermissionDeniedError(ShellgateError):
    """Raised to the waiting caller when an operator rejects a permission request."""

    kind = "permission_denied"

    def __init__(self, request_id: str) -> None:
        super().__init__(f"permission denied for request {request_id}")
        self.request_id = request_id


class PermissionCancelledError(ShellgateError):
    """Raised to the waiting caller when a pending permission request is cancelled."""

    kind = "cancelled"

    def __init__(self, request_id: str) -> None:
        super().__init__(f"permission request {request_id} was cancelled")
        self.request_id = request_id


class ProcessSpawnError(ShellgateError):
    """Raised synchronously when the OS refuses to start a program."""

    kind = "spawn_failure"


class ProcessPolicyError(ShellgateError):
    """Raised when a spawn would escape the configured workspace root."""

    kind = "policy_violation"


class ProcessAlreadyRunningError(ShellgateError):
    """Raised when a correlation id already owns a live process."""

    kind = "duplicate_correlation"


class ProcessTimeoutError(ShellgateError):
    """Raised when a process exceeded its wall-clock budget and was tree-killed."""

    kind = "process_timeout"


class MaxRetriesExceededError(ShellgateError):
    """Raised when the auto-fix loop exhausts its bounded attempts."""

    kind = "max_retries_exceeded"

    def __init__(self, command: str, attempts: int) -> None:
        super().__init__(f"max retries exceeded for command: {command} ({attempts} attempts)")
        self.command = command
        self.attempts = attempts


class LedgerUnavailableError(ShellgateError):
    """Raised when the durable ledger backend cannot be opened."""

    kind = "ledger_unavailable"


__all__ = [
    "LedgerUnavailableError",
    "MaxRetriesExceededError",
    "PermissionCancelledError",
    "PermissionDeniedError",
    "PolicyViolationError",
    "ProcessAlreadyRunningError",
    "ProcessPolicyError",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "ShellgateError",
    "TokenizeError",
]
