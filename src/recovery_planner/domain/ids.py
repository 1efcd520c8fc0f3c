"""
recovery-planner: identifiers.

Plans, routes, runs, incidents, and events are keyed by ``<prefix>-<ULID>``.
A ULID is 48 bits of millisecond timestamp followed by 80 random bits,
written as 26 Crockford Base32 characters so ids sort by creation time.
Route node ids are not random: they derive from the plan id, the step
position, and a slug of the step command.
"""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from functools import partial
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

_RANDOM_BITS: Final[int] = ULID_RANDOM_BYTES * 8
_ULID_BITS: Final[int] = 128
# Crockford digits mapped onto the alphabet ``int(..., 32)`` understands.
_TO_BASE32HEX: Final[dict[int, int]] = str.maketrans(
    CROCKFORD_BASE32_ALPHABET, "0123456789ABCDEFGHIJKLMNOPQRSTUV"
)

PLAN_ID_PREFIX: Final[str] = "plan"
ROUTE_ID_PREFIX: Final[str] = "route"
RUN_ID_PREFIX: Final[str] = "run"
INCIDENT_ID_PREFIX: Final[str] = "inc"
EVENT_ID_PREFIX: Final[str] = "evt"

_SEPARATOR: Final[str] = "-"
_NODE_SEPARATOR: Final[str] = ":"
_NON_SLUG_RUN: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9]+")

RandomSource = Callable[[int], bytes]


def generate_ulid(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    """Return a new uppercase ULID.

    ``timestamp_ms`` defaults to the wall clock and ``randbytes`` to
    :func:`secrets.token_bytes`; both are injectable for reproducible ids.
    """
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    stamp = _checked_timestamp(timestamp_ms)
    entropy = bytes((randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES))
    if len(entropy) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (stamp << _RANDOM_BITS) | int.from_bytes(entropy, "big")
    digits: list[str] = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        digits.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(digits))


def validate_ulid(s: str) -> None:
    """Raise ``ValueError`` unless ``s`` is a ULID (case-insensitive)."""
    _ulid_value(s)


def parse_ulid_timestamp_ms(s: str) -> int:
    return _ulid_value(s) >> _RANDOM_BITS


def generate_prefixed_id(
    prefix: str, *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    """Return ``<prefix>-<ulid>``."""
    _check_prefix(prefix)
    return prefix + _SEPARATOR + generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")

    head, separator, tail = id_str.partition(_SEPARATOR)
    if head != expected_prefix or not separator:
        raise ValueError(f"expected prefix '{expected_prefix}{_SEPARATOR}' in {id_str!r}")
    try:
        _ulid_value(tail)
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def derive_node_id(plan_id: str, index: int, command: str) -> str:
    """``<plan_id>:<index>:<command-slug>``; equal inputs give equal ids across runs."""
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise ValueError(f"node index must be a non-negative integer, got {index!r}")
    slug = _NON_SLUG_RUN.sub("-", command.strip().lower()).strip("-")
    if not slug:
        raise ValueError(f"command {command!r} does not yield a node id slug")
    return _NODE_SEPARATOR.join((plan_id, str(index), slug))


generate_plan_id = partial(generate_prefixed_id, PLAN_ID_PREFIX)
generate_route_id = partial(generate_prefixed_id, ROUTE_ID_PREFIX)
generate_run_id = partial(generate_prefixed_id, RUN_ID_PREFIX)
generate_incident_id = partial(generate_prefixed_id, INCIDENT_ID_PREFIX)
generate_event_id = partial(generate_prefixed_id, EVENT_ID_PREFIX)

validate_plan_id = partial(validate_prefixed_id, expected_prefix=PLAN_ID_PREFIX)
validate_route_id = partial(validate_prefixed_id, expected_prefix=ROUTE_ID_PREFIX)
validate_run_id = partial(validate_prefixed_id, expected_prefix=RUN_ID_PREFIX)
validate_incident_id = partial(validate_prefixed_id, expected_prefix=INCIDENT_ID_PREFIX)
validate_event_id = partial(validate_prefixed_id, expected_prefix=EVENT_ID_PREFIX)


def _checked_timestamp(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(value).__name__}")
    if value < 0 or value > ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {value}"
        )
    return value


def _ulid_value(text: object) -> int:
    if not isinstance(text, str):
        raise ValueError(f"ulid must be a string, got {type(text).__name__}")
    if len(text) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(text)}")
    upper = text.upper()
    for position, char in enumerate(upper):
        if char not in CROCKFORD_BASE32_ALPHABET:
            raise ValueError(f"invalid ULID character {text[position]!r} at index {position}")

    value = int(upper.translate(_TO_BASE32HEX), 32)
    if value.bit_length() > _ULID_BITS:
        raise ValueError("ulid overflow: value exceeds maximum 128-bit ULID")
    return value


def _check_prefix(prefix: object) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_SEPARATOR}'")


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "EVENT_ID_PREFIX",
    "INCIDENT_ID_PREFIX",
    "PLAN_ID_PREFIX",
    "ROUTE_ID_PREFIX",
    "RUN_ID_PREFIX",
    "RandomSource",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "derive_node_id",
    "generate_event_id",
    "generate_incident_id",
    "generate_plan_id",
    "generate_prefixed_id",
    "generate_route_id",
    "generate_run_id",
    "generate_ulid",
    "parse_ulid_timestamp_ms",
    "validate_event_id",
    "validate_incident_id",
    "validate_plan_id",
    "validate_prefixed_id",
    "validate_route_id",
    "validate_run_id",
    "validate_ulid",
]
