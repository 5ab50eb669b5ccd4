"""
Identifier protection primitives.

Pure library modules used on every write and lookup of an identity record:
- **canonicalization**: trim/lowercase canonical form of an identifier
- **lookup**: SHA-256 lookup digest used as the searchable surrogate
"""

from dietician_core.core.crypto.canonicalization import normalize_identifier
from dietician_core.core.crypto.lookup import (
    LOOKUP_DIGEST_ALGORITHM,
    ensure_lookup_digest_available,
    identifier_search_key,
    lookup_hash,
)

__all__ = [
    "normalize_identifier",
    "LOOKUP_DIGEST_ALGORITHM",
    "ensure_lookup_digest_available",
    "identifier_search_key",
    "lookup_hash",
]
