"""Canonical form of identity identifiers (e-mail addresses)."""

from __future__ import annotations


def normalize_identifier(raw: str | None) -> str | None:
    """
    Return the canonical form of an identifier: surrounding whitespace
    removed, lowercased.

    ``None`` and the empty string are returned unchanged. The same canonical
    value must feed both the lookup digest and the cipher, otherwise lookups
    stop matching stored records.
    """
    if raw is None or raw == "":
        return raw
    return raw.strip().lower()
