"""Utilities for rendering protected identifiers for display."""

from __future__ import annotations

from dietician_core.core.encryption import DecryptionError, FieldCipher
from dietician_core.core.logging import get_logger
from dietician_core.db.models import User

logger = get_logger(__name__)


def mask_email(email: str | None) -> str | None:
    """Mask an email address for UI-safe display."""
    if not email or "@" not in email:
        return None
    local_part, domain = email.split("@", 1)
    if not local_part:
        return None
    if len(local_part) == 1:
        masked_local = "*"
    elif len(local_part) == 2:
        masked_local = f"{local_part[0]}*"
    else:
        masked_local = f"{local_part[0]}{'*' * (len(local_part) - 2)}{local_part[-1]}"
    return f"{masked_local}@{domain}"


def unavailable_placeholder(search_key: str | None) -> str:
    """Stable stand-in shown when the stored identifier cannot be decrypted."""
    return f"***@{(search_key or '')[:8]}..."


def display_identifier(user: User, cipher: FieldCipher, *, masked: bool = True) -> str:
    """
    Render the user's identifier.

    The blob is decrypted and, unless ``masked`` is false, passed through
    ``mask_email``. An undecryptable blob never fails the caller: it is logged
    and replaced by ``unavailable_placeholder``.
    """
    try:
        plaintext = cipher.decrypt(user.email_encrypted)
    except DecryptionError:
        logger.warning("identifier_display_unavailable", user_id=user.id)
        return unavailable_placeholder(user.email_search)

    if not plaintext:
        return unavailable_placeholder(user.email_search)
    if not masked:
        return plaintext
    return mask_email(plaintext) or unavailable_placeholder(user.email_search)
