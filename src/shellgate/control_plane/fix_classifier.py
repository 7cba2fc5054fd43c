"""Pluggable classifiers that map a failed command's stderr to a replacement command."""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Final, Protocol

CompletionFn = Callable[[str], Awaitable[str]]

_NO_FIX_SENTINEL: Final[str] = "NONE"
_MAX_PROMPT_STDERR_CHARS: Final[int] = 2_000

DEFAULT_LLM_PROMPT: Final[str] = (
    "A shell command failed inside a build workspace.\n"
    "Command: {command}\n"
    "Last stderr output:\n{stderr_tail}\n\n"
    "Reply with a single replacement command line that fixes the failure, "
    "without shell operators or explanation. Reply NONE if no safe fix exists."
)


class FixClassifier(Protocol):
    async def suggest(self, command: str, stderr_tail: str) -> str | None:
        """Return a replacement command line, or ``None`` to retry unchanged."""
        ...


class NoFixClassifier:
    """Never proposes a fix; failed commands are retried as-is."""

    async def suggest(self, command: str, stderr_tail: str) -> str | None:
        return None


@dataclass(frozen=True, slots=True)
class FixRule:
    """``pattern`` matched against stderr; ``replacement=None`` pins "no fix"."""

    pattern: re.Pattern[str]
    replacement: str | None

    @classmethod
    def compile(cls, pattern: str, replacement: str | None) -> FixRule:
        return cls(pattern=re.compile(pattern, re.IGNORECASE), replacement=replacement)


DEFAULT_FIX_RULES: Final[tuple[FixRule, ...]] = (
    FixRule.compile(r"command not found|is not recognized", None),
    FixRule.compile(r"missing script: build", "npm install"),
    FixRule.compile(r"cannot find module|module not found", "npm install"),
    FixRule.compile(r"No module named '?[\w.]+'?", "python -m pip install -e ."),
)


class PatternFixClassifier:
    """First matching rule wins."""

    def __init__(self, rules: Sequence[FixRule] = DEFAULT_FIX_RULES) -> None:
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[FixRule, ...]:
        return self._rules

    async def suggest(self, command: str, stderr_tail: str) -> str | None:
        for rule in self._rules:
            if rule.pattern.search(stderr_tail):
                if rule.replacement is None or rule.replacement == command:
                    return None
                return rule.replacement
        return None


class LLMFixClassifier:
    """Ask an external completion function for a fix.

    The completion is trusted for nothing: the dispatcher re-checks any replacement
    against the command policy before running it.
    """

    def __init__(
        self, complete: CompletionFn, *, prompt_template: str = DEFAULT_LLM_PROMPT
    ) -> None:
        self._complete = complete
        self._prompt_template = prompt_template

    def build_prompt(self, command: str, stderr_tail: str) -> str:
        return self._prompt_template.format(
            command=command, stderr_tail=stderr_tail[-_MAX_PROMPT_STDERR_CHARS:]
        )

    async def suggest(self, command: str, stderr_tail: str) -> str | None:
        reply = await self._complete(self.build_prompt(command, stderr_tail))
        return parse_completion(reply, original=command)


def parse_completion(reply: object, *, original: str) -> str | None:
    """Reduce a free-text completion to one command line, or ``None``."""

    if not isinstance(reply, str):
        return None
    for line in reply.strip().splitlines():
        if line.strip().startswith("```"):
            continue
        candidate = line.strip().strip("`").strip()
        if not candidate:
            continue
        if candidate.upper() == _NO_FIX_SENTINEL or candidate == original:
            return None
        return candidate
    return None


__all__ = [
    "CompletionFn",
    "DEFAULT_FIX_RULES",
    "DEFAULT_LLM_PROMPT",
    "FixClassifier",
    "FixRule",
    "LLMFixClassifier",
    "NoFixClassifier",
    "PatternFixClassifier",
    "parse_completion",
]
