"""Process entrypoint for the ``shellgate`` console script and ``python -m shellgate``.

Whatever escapes the command handlers is mapped onto :class:`ExitCode`. Expected
failures print one line; anything unrecognised prints a traceback and exits 4.
"""

from __future__ import annotations

import sys
import traceback
from collections.abc import Iterator
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    REJECTED = 1
    CONFIG_ERROR = 2
    EXECUTION_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    try:
        from shellgate.ui.cli import run_cli

        return _exit_status(run_cli(argv))
    except SystemExit as exc:
        return _exit_status(exc.code)
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return ExitCode.REJECTED
    except Exception as exc:  # noqa: BLE001 - process boundary
        code = classify_exception(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
        return code


def classify_exception(exc: BaseException) -> ExitCode:
    """Pick the exit code for ``exc`` by inspecting it and its causes."""

    from shellgate.config.loader import ConfigLoadError
    from shellgate.config.schema import ConfigValidationError
    from shellgate.errors import LedgerUnavailableError, ProcessSpawnError
    from shellgate.persistence.state_db import StateDBError

    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((ConfigLoadError, ConfigValidationError), ExitCode.CONFIG_ERROR),
        ((LedgerUnavailableError, ProcessSpawnError, StateDBError), ExitCode.EXECUTION_ERROR),
        (
            (FileNotFoundError, NotADirectoryError, PermissionError, ValueError),
            ExitCode.CONFIG_ERROR,
        ),
    )
    for item in _causes(exc):
        for types, code in routes:
            if isinstance(item, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _exit_status(raw: object) -> int:
    if raw is None:
        return ExitCode.SUCCESS
    if isinstance(raw, int) and raw in list(ExitCode):
        return raw
    if isinstance(raw, str) and raw.strip():
        print(raw.strip(), file=sys.stderr)
    return ExitCode.INTERNAL_ERROR


__all__ = ["ExitCode", "classify_exception", "cli_entrypoint"]
