from __future__ import annotations

import pytest

from shellgate.control_plane.fix_classifier import (
    FixRule,
    LLMFixClassifier,
    NoFixClassifier,
    PatternFixClassifier,
    parse_completion,
)


async def test_no_fix_classifier_never_suggests() -> None:
    assert await NoFixClassifier().suggest("npm run build", "anything") is None


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        ("npm ERR! Missing script: build", "npm install"),
        ("Error: Cannot find module 'react'", "npm install"),
        ("ModuleNotFoundError: No module named 'requests'", "python -m pip install -e ."),
        ("bash: tsc: command not found", None),
        ("Segmentation fault", None),
    ],
)
async def test_default_rules(stderr: str, expected: str | None) -> None:
    assert await PatternFixClassifier().suggest("npm run build", stderr) == expected


async def test_first_matching_rule_wins_and_identity_is_no_fix() -> None:
    classifier = PatternFixClassifier(
        [FixRule.compile(r"lockfile", "npm ci"), FixRule.compile(r"lock", "npm install")]
    )

    assert await classifier.suggest("npm run build", "stale lockfile") == "npm ci"
    assert await classifier.suggest("npm ci", "stale lockfile") is None


async def test_llm_classifier_prompts_and_parses() -> None:
    prompts: list[str] = []

    async def _complete(prompt: str) -> str:
        prompts.append(prompt)
        return "```sh\nnpm install\n```"

    classifier = LLMFixClassifier(_complete)

    assert await classifier.suggest("npm run build", "x" * 5000 + "missing dep") == "npm install"
    assert "Command: npm run build" in prompts[0]
    assert "x" * 1989 + "missing dep" in prompts[0]
    assert "x" * 1990 not in prompts[0]


@pytest.mark.parametrize(
    ("reply", "expected"),
    [
        ("npm install", "npm install"),
        ("  `npm ci`  ", "npm ci"),
        ("```\n\nnpm test\n```", "npm test"),
        ("NONE", None),
        ("none", None),
        ("npm run build", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_completion(reply: object, expected: str | None) -> None:
    assert parse_completion(reply, original="npm run build") == expected
