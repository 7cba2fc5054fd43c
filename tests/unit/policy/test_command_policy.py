"""
shellgate: unit tests for the command policy

File: tests/unit/policy/test_command_policy.py

Purpose
- Validate allow / deny / require-permission classification and check ordering.

What this test file should cover
- Metacharacter and substitution denial for every input that carries one.
- Named reference decisions for common developer commands.
- Privileged, unknown, sensitive-path and sub-command escalation.
- Options and sed scripts that start programs or write files.
- Table extension.
"""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from shellgate.domain.models import RiskLevel
from shellgate.policy.command_policy import (
    Allow,
    CommandPolicy,
    Deny,
    PolicyRule,
    PolicyTables,
    RequirePermission,
    find_dangerous_option,
    is_sensitive_argument,
    program_name,
    sed_scripts_are_safe,
)

_FORBIDDEN = (";", "|", "&", "<", ">", "$(", "`", "\n")
_POLICY = CommandPolicy()


def test_reference_decisions() -> None:
    assert isinstance(_POLICY.decide("rm -rf /"), Deny)
    assert isinstance(_POLICY.decide("npm run build"), Allow)
    assert isinstance(_POLICY.decide("curl http://example.com"), RequirePermission)
    assert isinstance(_POLICY.decide("git push"), RequirePermission)
    assert isinstance(_POLICY.decide("echo $(whoami)"), Deny)


@given(
    prefix=st.text(max_size=20),
    marker=st.sampled_from(_FORBIDDEN),
    suffix=st.text(max_size=20),
)
def test_any_metacharacter_is_denied(prefix: str, marker: str, suffix: str) -> None:
    decision = _POLICY.decide(f"{prefix}{marker}{suffix}")

    assert isinstance(decision, Deny)
    assert decision.rule in {PolicyRule.SUBSTITUTION, PolicyRule.SHELL_OPERATOR}


def test_quoted_operators_are_still_denied() -> None:
    decision = _POLICY.decide("echo 'a;b'")

    assert isinstance(decision, Deny)
    assert decision.rule is PolicyRule.SHELL_OPERATOR
    assert decision.subject == ";"


def test_substitution_checked_before_operators() -> None:
    decision = _POLICY.decide("echo `id` | cat")

    assert isinstance(decision, Deny)
    assert decision.rule is PolicyRule.SUBSTITUTION
    assert decision.subject == "`"


@pytest.mark.parametrize("raw", ["", "   ", "echo 'unterminated"])
def test_unparseable_input_is_denied(raw: str) -> None:
    decision = _POLICY.decide(raw)

    assert isinstance(decision, Deny)
    assert decision.rule is PolicyRule.PARSE_ERROR


def test_overlong_command_is_denied() -> None:
    policy = CommandPolicy(PolicyTables(max_command_length=16))

    decision = policy.decide("echo " + "x" * 32)

    assert isinstance(decision, Deny)
    assert decision.rule is PolicyRule.PARSE_ERROR


def test_denied_program_matched_by_basename() -> None:
    decision = _POLICY.decide("/bin/rm file.txt")

    assert isinstance(decision, Deny)
    assert decision.rule is PolicyRule.DENIED_PROGRAM
    assert decision.subject == "/bin/rm"


@pytest.mark.parametrize("raw", ["bash build.sh", "python3 setup.py", "ssh host", "wget x"])
def test_privileged_programs_need_high_risk_permission(raw: str) -> None:
    decision = _POLICY.decide(raw)

    assert isinstance(decision, RequirePermission)
    assert decision.rule is PolicyRule.PRIVILEGED_PROGRAM
    assert decision.risk_level is RiskLevel.HIGH


def test_unknown_program_needs_medium_risk_permission() -> None:
    decision = _POLICY.decide("make all")

    assert isinstance(decision, RequirePermission)
    assert decision.rule is PolicyRule.UNKNOWN_PROGRAM
    assert decision.risk_level is RiskLevel.MEDIUM
    assert decision.parsed.argv == ("make", "all")


def test_safe_program_by_path_is_not_safe() -> None:
    decision = _POLICY.decide("/usr/bin/git status")

    assert isinstance(decision, RequirePermission)
    assert decision.rule is PolicyRule.UNKNOWN_PROGRAM


@pytest.mark.parametrize(
    "raw",
    [
        "cat /etc/passwd",
        "cat ../secrets",
        "ls ~",
        "rg --file=/root/x pattern",
        "cat /proc/1/env",
        "cat //etc/shadow",
        "cat /./etc/passwd",
        "ls ///dev/",
        "rg pattern //root//notes",
    ],
)
def test_sensitive_arguments_need_permission(raw: str) -> None:
    decision = _POLICY.decide(raw)

    assert isinstance(decision, RequirePermission)
    assert decision.rule is PolicyRule.SENSITIVE_PATH
    assert decision.risk_level is RiskLevel.HIGH


def test_subcommand_outside_allow_list() -> None:
    decision = _POLICY.decide("git")

    assert isinstance(decision, RequirePermission)
    assert decision.rule is PolicyRule.SUBCOMMAND
    assert "<none>" in decision.reason


@pytest.mark.parametrize("raw", ["git status", "git diff HEAD", "npx tsc --noEmit", "ls -la src"])
def test_read_only_commands_are_allowed(raw: str) -> None:
    decision = _POLICY.decide(raw)

    assert isinstance(decision, Allow)
    assert decision.parsed.original == raw


@pytest.mark.parametrize(
    "raw",
    [
        'sed "1e touch pwned" notes.txt',
        "sed s/a/b/e notes.txt",
        "sed -n 's/x/y/w out.txt' notes.txt",
        "sed --expression='$r other.txt' notes.txt",
        "sed -e p -e 'w copy.txt' notes.txt",
        "sed --expr=1e notes.txt",
        "sed -f edits.sed notes.txt",
        "sed -ne 'W log.txt' notes.txt",
        "rg --pre=touch x .",
        "rg --pre touch x .",
        "rg --pre-glob '*.pdf' x",
        "git grep --open-files-in-pager=touch x",
        "git grep --open=touch x",
        "git grep -Otouch x",
        "git diff --output=README.md",
        "git log -p --ext-diff",
    ],
)
def test_options_that_start_programs_or_write_files_need_permission(raw: str) -> None:
    decision = _POLICY.decide(raw)

    assert isinstance(decision, RequirePermission)
    assert decision.rule is PolicyRule.SUBCOMMAND
    assert decision.risk_level is RiskLevel.HIGH


@pytest.mark.parametrize(
    "raw",
    [
        "sed s/hello/world/g notes.txt",
        "sed -n 1,5p notes.txt",
        "sed -i s/a/b/ notes.txt",
        "sed '/^#/d' notes.txt",
        "sed y/abc/xyz/ notes.txt",
        "sed 2q notes.txt",
        "sed '1i header' notes.txt",
        "sed -e s/a/b/ -e 's/c/d/2' notes.txt",
        "rg --pretty pattern src",
        "git grep -n TODO",
        "git log --oneline",
        "git diff --stat",
    ],
)
def test_stream_edits_and_plain_searches_stay_allowed(raw: str) -> None:
    assert isinstance(_POLICY.decide(raw), Allow)


def test_dangerous_option_and_sed_helpers() -> None:
    assert find_dangerous_option(["-n", "--", "--output=x"], {"--output"}) is None
    assert find_dangerous_option(["-nO", "less"], {"-O"}) == "-O"
    assert sed_scripts_are_safe(["-e", "s/a/b/", "--", "-e"])
    assert not sed_scripts_are_safe(["-e"])
    assert not sed_scripts_are_safe(["s/a/b"])
    assert not sed_scripts_are_safe(["1{e id", "notes.txt"])

    tables = PolicyTables(dangerous_options={"ls": frozenset({"--color"})})
    decision = CommandPolicy(tables).decide("ls --color=always")
    assert isinstance(decision, RequirePermission)
    assert "--color" in decision.reason


def test_extended_tables_merge_and_deny_wins() -> None:
    tables = PolicyTables().extended(safe=["make", "cargo"], denied=["cargo"])
    policy = CommandPolicy(tables)

    assert isinstance(policy.decide("make test"), Allow)
    cargo = policy.decide("cargo build")
    assert isinstance(cargo, Deny)
    assert cargo.rule is PolicyRule.DENIED_PROGRAM


def test_tables_reject_denied_and_safe_overlap() -> None:
    with pytest.raises(ValueError, match="both denied and safe"):
        PolicyTables(safe_programs=frozenset({"rm"}))


def test_decision_logger_sees_every_decision() -> None:
    seen: list[tuple[str, str]] = []
    policy = CommandPolicy(
        decision_logger=lambda raw, decision: seen.append((raw, type(decision).__name__))
    )

    policy.decide("git status")
    policy.decide("rm x")

    assert seen == [("git status", "Allow"), ("rm x", "Deny")]


def test_helpers() -> None:
    assert program_name("/usr/local/bin/node") == "node"
    assert program_name("npm") == "npm"
    assert is_sensitive_argument("--config=../x")
    assert not is_sensitive_argument("--config=./x")
    assert not is_sensitive_argument("/etcetera")
