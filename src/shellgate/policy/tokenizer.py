"""POSIX-style command-line tokenizer.

Quotes and backslash escapes are honoured. Globs, variables and subshells are never
expanded; the result is a literal argv.
"""

from __future__ import annotations

import shlex

from shellgate.constants import MAX_COMMAND_LENGTH
from shellgate.domain.models import ParsedCommand
from shellgate.errors import TokenizeError


def tokenize(raw: str, *, max_length: int = MAX_COMMAND_LENGTH) -> ParsedCommand:
    """Split ``raw`` into a :class:`ParsedCommand` or raise :class:`TokenizeError`."""
    if not isinstance(raw, str):
        raise TokenizeError(f"command must be a string, got {type(raw).__name__}")
    if len(raw) > max_length:
        raise TokenizeError(f"command exceeds maximum length of {max_length} characters")
    if not raw.strip():
        raise TokenizeError("command is empty")

    lexer = shlex.shlex(raw, posix=True)
    lexer.whitespace_split = True
    lexer.commenters = ""
    try:
        tokens = list(lexer)
    except ValueError as exc:
        raise TokenizeError(f"unable to tokenize command: {exc}") from exc

    if not tokens or not tokens[0]:
        raise TokenizeError("command has no program")
    return ParsedCommand(original=raw, program=tokens[0], args=tuple(tokens[1:]))


def join(argv: tuple[str, ...] | list[str]) -> str:
    """Render argv back into a single shell-quoted display string."""
    return shlex.join(argv)


__all__ = ["join", "tokenize"]
