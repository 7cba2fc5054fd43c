"""Identifiers for runs, command correlations and permission requests.

Every id is ``<kind>-<ULID>``: a short kind prefix and a 26-character Crockford
Base32 ULID, so ids sort by creation time and are safe in file names and log keys.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
_ENTROPY_BYTES: Final[int] = 10
_TIMESTAMP_LIMIT: Final[int] = 1 << 48

RandBytes = Callable[[int], bytes]


class IdKind(StrEnum):
    RUN = "run"
    CORRELATION = "cor"
    PERMISSION_REQUEST = "perm"


RUN_ID_PREFIX: Final[str] = IdKind.RUN.value
CORRELATION_ID_PREFIX: Final[str] = IdKind.CORRELATION.value
PERMISSION_REQUEST_ID_PREFIX: Final[str] = IdKind.PERMISSION_REQUEST.value


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    """Return a 26-character uppercase ULID.

    ``timestamp_ms`` and ``randbytes`` exist for deterministic tests; entropy comes
    from :mod:`secrets` otherwise.
    """

    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= millis < _TIMESTAMP_LIMIT:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{_TIMESTAMP_LIMIT - 1}, got {millis}"
        )
    entropy = bytes((randbytes or secrets.token_bytes)(_ENTROPY_BYTES))
    if len(entropy) != _ENTROPY_BYTES:
        raise ValueError(f"randbytes must return exactly {_ENTROPY_BYTES} bytes")

    number = millis << 80 | int.from_bytes(entropy, "big")
    digits: list[str] = []
    for _ in range(ULID_LENGTH):
        number, digit = divmod(number, 32)
        digits.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(digits))


def validate_ulid(value: str) -> None:
    """Raise ``ValueError`` unless ``value`` is a ULID (case-insensitive)."""

    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    for index, char in enumerate(value):
        if char.upper() not in CROCKFORD_BASE32_ALPHABET:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
    # 26 base32 digits hold 130 bits; a ULID is 128.
    if CROCKFORD_BASE32_ALPHABET.index(value[0].upper()) > 7:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")


def generate_prefixed_id(
    prefix: str, *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    _check_prefix(prefix)
    return f"{prefix}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    prefix, separator, ulid = id_str.partition("-")
    if not separator or prefix != expected_prefix:
        raise ValueError(f"expected prefix '{expected_prefix}-'")
    try:
        validate_ulid(ulid)
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def id_kind(id_str: str) -> IdKind | None:
    """Return the kind of a well-formed shellgate id, or ``None``."""

    for kind in IdKind:
        try:
            validate_prefixed_id(id_str, kind.value)
        except ValueError:
            continue
        return kind
    return None


def generate_run_id(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    return generate_prefixed_id(RUN_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_correlation_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    return generate_prefixed_id(
        CORRELATION_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes
    )


def generate_permission_request_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    return generate_prefixed_id(
        PERMISSION_REQUEST_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes
    )


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if "-" in prefix:
        raise ValueError("prefix must not contain '-'")


__all__ = [
    "CORRELATION_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "IdKind",
    "PERMISSION_REQUEST_ID_PREFIX",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "generate_correlation_id",
    "generate_permission_request_id",
    "generate_prefixed_id",
    "generate_run_id",
    "generate_ulid",
    "id_kind",
    "validate_prefixed_id",
    "validate_ulid",
]
