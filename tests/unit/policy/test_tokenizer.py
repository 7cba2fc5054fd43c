from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from shellgate.errors import TokenizeError
from shellgate.policy.tokenizer import join, tokenize

_PLAIN_TOKEN = st.text(
    alphabet="abcdefghijklmnopqrstuvwxyz0123456789-_./=:+,@%", min_size=1, max_size=12
)


@given(tokens=st.lists(_PLAIN_TOKEN, min_size=1, max_size=8))
def test_unquoted_tokens_rejoin_idempotently(tokens: list[str]) -> None:
    first = tokenize(" ".join(tokens))
    second = tokenize(" ".join(first.argv))

    assert first.argv == tuple(tokens)
    assert second.argv == first.argv


@given(
    tokens=st.lists(
        st.text(
            alphabet=st.characters(blacklist_categories=("Cc", "Cs")), min_size=1, max_size=10
        ),
        min_size=1,
        max_size=5,
    )
)
def test_join_round_trips_through_tokenize(tokens: list[str]) -> None:
    assert tokenize(join(tokens)).argv == tuple(tokens)


def test_quotes_and_escapes() -> None:
    parsed = tokenize("""git commit -m "fix the build" --author='A B' a\\ b""")

    assert parsed.program == "git"
    assert parsed.args == ("commit", "-m", "fix the build", "--author=A B", "a b")


def test_globs_and_variables_are_literal() -> None:
    parsed = tokenize("ls *.py $HOME")

    assert parsed.args == ("*.py", "$HOME")


def test_empty_quoted_argument_is_kept() -> None:
    assert tokenize("echo '' x").args == ("", "x")


def test_hash_is_not_a_comment() -> None:
    assert tokenize("echo #tag").args == ("#tag",)


@pytest.mark.parametrize("raw", ["", "  \t ", "'unterminated", "''"])
def test_rejects_unusable_input(raw: str) -> None:
    with pytest.raises(TokenizeError):
        tokenize(raw)


def test_rejects_overlong_input() -> None:
    with pytest.raises(TokenizeError, match="maximum length"):
        tokenize("echo hello", max_length=4)
