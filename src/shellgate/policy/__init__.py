"""Command policy: tokenizer and allow/deny/require-permission classifier."""

from shellgate.policy.command_policy import (
    Allow,
    CommandDecision,
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
from shellgate.policy.tokenizer import join, tokenize

__all__ = [
    "Allow",
    "CommandDecision",
    "CommandPolicy",
    "Deny",
    "PolicyRule",
    "PolicyTables",
    "RequirePermission",
    "find_dangerous_option",
    "is_sensitive_argument",
    "join",
    "program_name",
    "sed_scripts_are_safe",
    "tokenize",
]
