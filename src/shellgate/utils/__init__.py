"""Shared utilities: async primitives and filesystem containment helpers."""

from shellgate.utils.concurrency import (
    BackgroundTasks,
    CancellationToken,
    DelayedCall,
    KeyedLocks,
)
from shellgate.utils.fs import ensure_parent_dir, is_within

__all__ = [
    "BackgroundTasks",
    "CancellationToken",
    "DelayedCall",
    "KeyedLocks",
    "ensure_parent_dir",
    "is_within",
]
