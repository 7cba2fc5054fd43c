"""Command policy: classify a raw command line into allow, deny or require-permission.

The policy is a pure function of its input and of the static :class:`PolicyTables`
it was built with. Checks run in a fixed order; the first one that fires decides.
"""

from __future__ import annotations

import posixpath
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TypeAlias

from shellgate.constants import MAX_COMMAND_LENGTH
from shellgate.domain.models import ParsedCommand, RiskLevel
from shellgate.errors import TokenizeError
from shellgate.policy.tokenizer import tokenize as _tokenize

SUBSTITUTION_MARKERS: tuple[str, ...] = ("$(", "${", "`", "\x00", "\n", "\r")
SHELL_OPERATORS: frozenset[str] = frozenset(";&|<>")

DEFAULT_DENIED_PROGRAMS: frozenset[str] = frozenset(
    {
        "rm",
        "rmdir",
        "dd",
        "mkfs",
        "shutdown",
        "reboot",
        "poweroff",
        "killall",
        "chmod",
        "chown",
        "sudo",
    }
)
DEFAULT_PERMISSION_PROGRAMS: frozenset[str] = frozenset(
    {
        # shells
        "sh",
        "bash",
        "zsh",
        "fish",
        # interpreters
        "node",
        "python",
        "python3",
        "deno",
        "ruby",
        "perl",
        # network transfer
        "curl",
        "wget",
        "ssh",
        "scp",
    }
)
DEFAULT_SAFE_PROGRAMS: frozenset[str] = frozenset(
    {"npm", "npx", "git", "ls", "cat", "rg", "sed", "pwd", "echo"}
)
DEFAULT_SUBCOMMANDS: Mapping[str, frozenset[str]] = {
    "npm": frozenset({"run", "ci", "install", "start", "test"}),
    "npx": frozenset({"tsc", "eslint"}),
    "git": frozenset({"status", "diff", "log", "show", "grep", "rev-parse", "branch"}),
}
# Options that make an otherwise read-only program start another program or write files.
DEFAULT_DANGEROUS_OPTIONS: Mapping[str, frozenset[str]] = {
    "git": frozenset({"-O", "--open-files-in-pager", "--output", "--ext-diff"}),
    "rg": frozenset({"--pre", "--pre-glob"}),
}
RESERVED_PATHS: tuple[str, ...] = ("/etc", "/proc", "/sys", "/dev", "/boot", "/root")

# sed commands and s/// flags that execute, write or read files named in the script.
_SED_UNSAFE_COMMANDS = frozenset("ewWrR")
_SED_UNSAFE_FLAGS = frozenset("ew")
_SED_PLAIN_COMMANDS = frozenset("{}=dDgGhHnNpPxzF")
_SED_LABEL_COMMANDS = frozenset(":btTv")


class PolicyRule(StrEnum):
    """Stable identifiers of the check that produced a decision."""

    SUBSTITUTION = "substitution"
    SHELL_OPERATOR = "shell_operator"
    PARSE_ERROR = "parse_error"
    DENIED_PROGRAM = "denied_program"
    PRIVILEGED_PROGRAM = "privileged_program"
    UNKNOWN_PROGRAM = "unknown_program"
    SENSITIVE_PATH = "sensitive_path"
    SUBCOMMAND = "subcommand"


@dataclass(frozen=True, slots=True)
class Allow:
    parsed: ParsedCommand


@dataclass(frozen=True, slots=True)
class RequirePermission:
    parsed: ParsedCommand
    reason: str
    rule: PolicyRule
    risk_level: RiskLevel = RiskLevel.MEDIUM


@dataclass(frozen=True, slots=True)
class Deny:
    """A rejected command. ``subject`` is the offending token or substring."""

    reason: str
    rule: PolicyRule
    subject: str = ""


CommandDecision: TypeAlias = Allow | RequirePermission | Deny
DecisionLogger = Callable[[str, CommandDecision], None]


@dataclass(frozen=True, slots=True)
class PolicyTables:
    """Static program tables the policy classifies against."""

    denied_programs: frozenset[str] = DEFAULT_DENIED_PROGRAMS
    permission_programs: frozenset[str] = DEFAULT_PERMISSION_PROGRAMS
    safe_programs: frozenset[str] = DEFAULT_SAFE_PROGRAMS
    subcommands: Mapping[str, frozenset[str]] = field(
        default_factory=lambda: dict(DEFAULT_SUBCOMMANDS)
    )
    dangerous_options: Mapping[str, frozenset[str]] = field(
        default_factory=lambda: dict(DEFAULT_DANGEROUS_OPTIONS)
    )
    reserved_paths: tuple[str, ...] = RESERVED_PATHS
    max_command_length: int = MAX_COMMAND_LENGTH

    def __post_init__(self) -> None:
        if self.max_command_length <= 0:
            raise ValueError("max_command_length must be > 0")
        overlap = self.denied_programs & self.safe_programs
        if overlap:
            raise ValueError(f"programs cannot be both denied and safe: {sorted(overlap)}")

    def extended(
        self,
        *,
        safe: Iterable[str] = (),
        denied: Iterable[str] = (),
        permission: Iterable[str] = (),
        max_command_length: int | None = None,
    ) -> PolicyTables:
        """Return a copy with additional programs merged into each table."""
        return PolicyTables(
            denied_programs=self.denied_programs | frozenset(denied),
            permission_programs=self.permission_programs | frozenset(permission),
            safe_programs=(self.safe_programs | frozenset(safe)) - frozenset(denied),
            subcommands=dict(self.subcommands),
            dangerous_options=dict(self.dangerous_options),
            reserved_paths=self.reserved_paths,
            max_command_length=(
                self.max_command_length if max_command_length is None else max_command_length
            ),
        )


class CommandPolicy:
    """Classifier with a default-deny posture for unknown programs."""

    def __init__(
        self,
        tables: PolicyTables | None = None,
        *,
        decision_logger: DecisionLogger | None = None,
    ) -> None:
        self._tables = tables or PolicyTables()
        self._decision_logger = decision_logger

    @property
    def tables(self) -> PolicyTables:
        return self._tables

    def tokenize(self, raw: str) -> ParsedCommand:
        return _tokenize(raw, max_length=self._tables.max_command_length)

    def decide(self, raw: str) -> CommandDecision:
        decision = self._decide(raw)
        if self._decision_logger is not None:
            self._decision_logger(raw, decision)
        return decision

    def _decide(self, raw: str) -> CommandDecision:
        tables = self._tables
        if not isinstance(raw, str):
            return Deny(reason="command must be a string", rule=PolicyRule.PARSE_ERROR)

        for marker in SUBSTITUTION_MARKERS:
            if marker in raw:
                return Deny(
                    reason=f"command substitution or control character {marker!r} is not allowed",
                    rule=PolicyRule.SUBSTITUTION,
                    subject=marker,
                )

        for char in raw:
            if char in SHELL_OPERATORS:
                return Deny(
                    reason=f"shell operator {char!r} is not allowed",
                    rule=PolicyRule.SHELL_OPERATOR,
                    subject=char,
                )

        try:
            parsed = self.tokenize(raw)
        except TokenizeError as exc:
            return Deny(reason=str(exc), rule=PolicyRule.PARSE_ERROR)

        name = program_name(parsed.program)
        if name in tables.denied_programs:
            return Deny(
                reason=f"program {name!r} is a destructive operation",
                rule=PolicyRule.DENIED_PROGRAM,
                subject=parsed.program,
            )

        if name in tables.permission_programs:
            return RequirePermission(
                parsed=parsed,
                reason=f"program {name!r} can run arbitrary code or reach the network",
                rule=PolicyRule.PRIVILEGED_PROGRAM,
                risk_level=RiskLevel.HIGH,
            )

        if parsed.program not in tables.safe_programs:
            return RequirePermission(
                parsed=parsed,
                reason=f"program {parsed.program!r} is not in the known-safe set",
                rule=PolicyRule.UNKNOWN_PROGRAM,
                risk_level=RiskLevel.MEDIUM,
            )

        for arg in parsed.args:
            if is_sensitive_argument(arg, tables.reserved_paths):
                return RequirePermission(
                    parsed=parsed,
                    reason=f"argument {arg!r} reaches outside the workspace",
                    rule=PolicyRule.SENSITIVE_PATH,
                    risk_level=RiskLevel.HIGH,
                )

        allowed_subcommands = tables.subcommands.get(parsed.program)
        if allowed_subcommands is not None:
            subcommand = parsed.args[0] if parsed.args else None
            if subcommand not in allowed_subcommands:
                shown = subcommand if subcommand is not None else "<none>"
                return RequirePermission(
                    parsed=parsed,
                    reason=(
                        f"sub-command {shown!r} of {parsed.program!r} is outside "
                        f"the allowed set {sorted(allowed_subcommands)}"
                    ),
                    rule=PolicyRule.SUBCOMMAND,
                    risk_level=RiskLevel.MEDIUM,
                )

        option = find_dangerous_option(
            parsed.args, tables.dangerous_options.get(parsed.program, frozenset())
        )
        if option is not None:
            return RequirePermission(
                parsed=parsed,
                reason=f"option {option!r} of {parsed.program!r} starts programs or writes files",
                rule=PolicyRule.SUBCOMMAND,
                risk_level=RiskLevel.HIGH,
            )

        if parsed.program == "sed" and not sed_scripts_are_safe(parsed.args):
            return RequirePermission(
                parsed=parsed,
                reason="sed script runs commands, writes files or cannot be inspected",
                rule=PolicyRule.SUBCOMMAND,
                risk_level=RiskLevel.HIGH,
            )

        return Allow(parsed=parsed)


def program_name(program: str) -> str:
    """Basename of ``program`` as used for deny/permission table lookups."""
    stripped = program.rstrip("/")
    return posixpath.basename(stripped) or stripped


def is_sensitive_argument(arg: str, reserved_paths: Iterable[str] = RESERVED_PATHS) -> bool:
    candidates = [arg]
    if arg.startswith("-") and "=" in arg:
        candidates.append(arg.split("=", 1)[1])
    for candidate in candidates:
        if ".." in candidate or candidate.startswith("~"):
            return True
        path = posixpath.normpath(candidate)
        if path.startswith("//"):
            path = "/" + path.lstrip("/")
        for reserved in reserved_paths:
            if path == reserved or path.startswith(reserved + "/"):
                return True
    return False


def find_dangerous_option(args: Sequence[str], options: Iterable[str]) -> str | None:
    """Return the first of ``options`` set in ``args``.

    Long options also match ``--name=value`` and any abbreviation; short
    options also match inside clusters such as ``-nO``.
    """

    long_options = sorted(option for option in options if option.startswith("--"))
    short_options = sorted(
        option for option in options if len(option) == 2 and option.startswith("-")
    )
    for arg in args:
        if arg == "--":
            break
        if arg.startswith("--"):
            name = arg.split("=", 1)[0]
            for option in long_options:
                if name == option or (len(name) > 2 and option.startswith(name)):
                    return option
        elif arg.startswith("-"):
            for option in short_options:
                if option[1] in arg[1:]:
                    return option
    return None


def sed_scripts_are_safe(args: Sequence[str]) -> bool:
    """``True`` when every sed script in ``args`` only edits the stream it reads."""

    scripts = _sed_scripts(args)
    return scripts is not None and all(_sed_script_is_safe(script) for script in scripts)


def _sed_scripts(args: Sequence[str]) -> list[str] | None:
    # None: a script is read from a file or the options cannot be followed.
    scripts: list[str] = []
    positional: list[str] = []
    index = 0
    while index < len(args):
        arg = args[index]
        index += 1
        if arg == "--":
            positional.extend(args[index:])
            break
        if arg.startswith("--"):
            name, has_value, value = arg.partition("=")
            if len(name) > 2 and "--expression".startswith(name):
                if not has_value:
                    if index >= len(args):
                        return None
                    value = args[index]
                    index += 1
                scripts.append(value)
            elif len(name) > 2 and "--file".startswith(name):
                return None
            elif len(name) > 2 and "--line-length".startswith(name) and not has_value:
                index += 1
            continue
        if arg.startswith("-") and len(arg) > 1:
            cluster = arg[1:]
            for offset, letter in enumerate(cluster):
                rest = cluster[offset + 1 :]
                if letter == "e":
                    if not rest:
                        if index >= len(args):
                            return None
                        rest = args[index]
                        index += 1
                    scripts.append(rest)
                    break
                if letter == "l":
                    if not rest:
                        index += 1
                    break
                if letter == "i":
                    break
                if letter not in "nrEsuz":
                    return None
            continue
        positional.append(arg)
    if not scripts and positional:
        scripts.append(positional[0])
    return scripts


def _sed_script_is_safe(script: str) -> bool:
    end = len(script)
    pos = 0
    while True:
        pos = _skip_chars(script, pos, " \t;")
        if pos >= end:
            return True
        pos = _skip_sed_address(script, pos)
        if pos < 0:
            return False
        pos = _skip_chars(script, pos, " \t!")
        if pos >= end:
            return False
        command = script[pos]
        pos += 1
        if command in _SED_UNSAFE_COMMANDS:
            return False
        if command in "#aic":
            # comment or text runs to the end of the script
            return True
        if command in "sy":
            pos = _skip_sed_operands(script, pos)
            if pos < 0:
                return False
            while command == "s" and pos < end and script[pos] not in ";}":
                flag = script[pos]
                if flag in _SED_UNSAFE_FLAGS or not (flag.isdigit() or flag in "gpiImM \t"):
                    return False
                pos += 1
        elif command in _SED_LABEL_COMMANDS:
            pos = _skip_chars(script, pos, " \t")
            while pos < end and script[pos] not in " \t;}":
                pos += 1
        elif command in "qQlL":
            pos = _skip_chars(script, pos, " \t0123456789")
        elif command not in _SED_PLAIN_COMMANDS:
            return False


def _skip_sed_address(script: str, pos: int) -> int:
    pos = _skip_sed_single_address(script, pos)
    if 0 <= pos < len(script) and script[pos] == ",":
        pos = _skip_sed_single_address(script, _skip_chars(script, pos + 1, " \t"))
    return pos


def _skip_sed_single_address(script: str, pos: int) -> int:
    if pos >= len(script):
        return pos
    char = script[pos]
    if char.isdigit() or char in "+~":
        return _skip_chars(script, pos + 1, "0123456789~")
    if char == "$":
        return pos + 1
    if char in "/\\":
        if char == "\\":
            pos += 1
            if pos >= len(script):
                return -1
        pos = _skip_delimited(script, pos + 1, script[pos])
        return pos if pos < 0 else _skip_chars(script, pos, "IM")
    return pos


def _skip_sed_operands(script: str, pos: int) -> int:
    # s/regex/replacement/ and y/source/dest/ both take two delimited operands.
    if pos >= len(script) or script[pos] == "\\":
        return -1
    delimiter = script[pos]
    pos += 1
    for _ in range(2):
        pos = _skip_delimited(script, pos, delimiter)
        if pos < 0:
            return -1
    return pos


def _skip_delimited(script: str, pos: int, delimiter: str) -> int:
    while pos < len(script):
        char = script[pos]
        if char == "\\":
            pos += 2
            continue
        if char == delimiter:
            return pos + 1
        pos += 1
    return -1


def _skip_chars(script: str, pos: int, chars: str) -> int:
    while pos < len(script) and script[pos] in chars:
        pos += 1
    return pos


__all__ = [
    "Allow",
    "CommandDecision",
    "CommandPolicy",
    "DEFAULT_DANGEROUS_OPTIONS",
    "DEFAULT_DENIED_PROGRAMS",
    "DEFAULT_PERMISSION_PROGRAMS",
    "DEFAULT_SAFE_PROGRAMS",
    "DEFAULT_SUBCOMMANDS",
    "Deny",
    "PolicyRule",
    "PolicyTables",
    "RESERVED_PATHS",
    "RequirePermission",
    "find_dangerous_option",
    "is_sensitive_argument",
    "program_name",
    "sed_scripts_are_safe",
]
