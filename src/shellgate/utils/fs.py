"""Filesystem helpers for workspace containment checks."""

from __future__ import annotations

import os
from pathlib import Path

PathLike = str | os.PathLike[str]


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False

    try:
        resolved_child = Path(child).resolve(strict=True)
    except FileNotFoundError:
        return False

    return resolved_child == resolved_parent or resolved_parent in resolved_child.parents


def ensure_parent_dir(path: PathLike) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


__all__ = ["PathLike", "ensure_parent_dir", "is_within"]
