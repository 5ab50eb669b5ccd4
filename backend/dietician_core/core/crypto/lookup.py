"""Deterministic lookup digests for encrypted identifiers."""

from __future__ import annotations

import base64
import hashlib

from dietician_core.core.config import ConfigurationError
from dietician_core.core.crypto.canonicalization import normalize_identifier

LOOKUP_DIGEST_ALGORITHM = "sha256"
# base64 of a 32-byte digest, padding included
LOOKUP_DIGEST_LENGTH = 44


def ensure_lookup_digest_available() -> None:
    """Fail startup when the lookup digest algorithm cannot be instantiated."""
    try:
        hashlib.new(LOOKUP_DIGEST_ALGORITHM)
    except ValueError as exc:
        raise ConfigurationError(
            f"{LOOKUP_DIGEST_ALGORITHM} digest algorithm is not available"
        ) from exc


def lookup_hash(canonical: str) -> str:
    """
    Compute the base64-encoded SHA-256 digest of a canonical identifier.

    The digest is one-way and only ever compared for equality.
    """
    try:
        digest = hashlib.new(LOOKUP_DIGEST_ALGORITHM, canonical.encode("utf-8")).digest()
    except ValueError as exc:
        raise ConfigurationError(
            f"{LOOKUP_DIGEST_ALGORITHM} digest algorithm is not available"
        ) from exc
    return base64.b64encode(digest).decode("ascii")


def identifier_search_key(raw: str) -> str:
    """Normalize a raw identifier and return its lookup digest."""
    canonical = normalize_identifier(raw)
    if not canonical:
        raise ValueError("identifier must not be empty")
    return lookup_hash(canonical)
