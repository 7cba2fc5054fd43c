"""Stable constants shared across the runtime planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
LEDGER_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
DEFAULT_LEDGER_PATH: Final[PurePosixPath] = STATE_DIR / "ledger.sqlite3"
DEFAULT_LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Command policy limits.
MAX_COMMAND_LENGTH: Final[int] = 4_000

# Process runner limits.
DEFAULT_PROCESS_TIMEOUT_SECONDS: Final[float] = 10 * 60.0
DEFAULT_MAX_OUTPUT_BYTES: Final[int] = 512 * 1024
STDERR_TAIL_CHARS: Final[int] = 2_000
READ_CHUNK_BYTES: Final[int] = 4_096

# Auto-fix loop and workflow retry bounds.
DEFAULT_MAX_AUTOFIX_RETRIES: Final[int] = 3
DEFAULT_RETRY_DELAY_SECONDS: Final[float] = 0.5
DEFAULT_MAX_BUILD_RETRIES: Final[int] = 3
DEFAULT_ANALYZE_DELAY_SECONDS: Final[float] = 1.0
DEFAULT_AUTO_FIX_DELAY_SECONDS: Final[float] = 0.5

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_ANALYZE_DELAY_SECONDS",
    "DEFAULT_AUTO_FIX_DELAY_SECONDS",
    "DEFAULT_LEDGER_PATH",
    "DEFAULT_LOG_DIR",
    "DEFAULT_MAX_AUTOFIX_RETRIES",
    "DEFAULT_MAX_BUILD_RETRIES",
    "DEFAULT_MAX_OUTPUT_BYTES",
    "DEFAULT_PROCESS_TIMEOUT_SECONDS",
    "DEFAULT_RETRY_DELAY_SECONDS",
    "LEDGER_SCHEMA_VERSION",
    "MAX_COMMAND_LENGTH",
    "READ_CHUNK_BYTES",
    "STATE_DIR",
    "STDERR_TAIL_CHARS",
]
