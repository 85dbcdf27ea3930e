"""Relay kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, body_fingerprint, canonical_dumps
from .idempotency import IDEMPOTENCY_HEADER, generate_key, is_mutating, parse_key

__all__ = [
    "CanonicalJsonTypeError",
    "IDEMPOTENCY_HEADER",
    "body_fingerprint",
    "canonical_dumps",
    "generate_key",
    "is_mutating",
    "parse_key",
]
