"""Idempotency keys for mutating API calls.

A key is generated once per logical user action and travels in the
``Idempotency-Key`` header. Retries of the same action reuse the key; two
independent actions get different keys. Uniqueness is probabilistic
(wall-clock millis plus a random base-36 suffix), which is enough for a
server that treats keys as a TTL-bounded deduplication hint.
"""

from __future__ import annotations

import secrets
import time
from typing import Callable

IDEMPOTENCY_HEADER = "Idempotency-Key"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
_SUFFIX_LEN = 10

_last_key: str | None = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def _suffix(length: int = _SUFFIX_LEN) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def is_mutating(method: str) -> bool:
    return str(method or "").upper() in MUTATING_METHODS


def generate_key(
    operation: str,
    entity_id: str | None = None,
    *,
    clock: Callable[[], int] = _now_ms,
    suffix: Callable[[], str] = _suffix,
) -> str:
    """Return ``<operation>[:<entity_id>]:<unixMillis>:<suffix>``.

    ``operation`` may already contain colons (``comment:create``). Two calls
    in a row never return the same key, even with a frozen clock and a
    degenerate suffix source.
    """
    global _last_key
    op = str(operation or "").strip(":") or "request"
    parts = [op]
    if entity_id is not None and str(entity_id) != "":
        parts.append(str(entity_id))
    stamp = clock()
    key = ":".join(parts + [str(stamp), suffix()])
    attempts = 0
    while key == _last_key:
        attempts += 1
        key = ":".join(parts + [str(stamp), suffix() + _ALPHABET[attempts % len(_ALPHABET)]])
    _last_key = key
    return key


def parse_key(key: str) -> dict | None:
    """Split a generated key back into its parts, or ``None`` if malformed."""
    if not isinstance(key, str) or not key:
        return None
    parts = key.split(":")
    if len(parts) < 3:
        return None
    suffix = parts[-1]
    stamp = parts[-2]
    if not stamp.isdigit() or not suffix:
        return None
    head = parts[:-2]
    # Operations are "<entity>:<verb>"; anything after that is the entity id.
    operation = ":".join(head[:2])
    entity_id = ":".join(head[2:]) or None
    return {
        "operation": operation,
        "entity_id": entity_id,
        "issued_ms": int(stamp),
        "suffix": suffix,
    }
