"""AES-256-GCM field encryption for identity e-mail addresses."""

from __future__ import annotations

import base64
import binascii
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from dietician_core.core.config import ConfigurationError, get_settings
from dietician_core.core.logging import get_logger

logger = get_logger(__name__)

_KEY_BYTES = 32
_NONCE_BYTES = 12
_TAG_BYTES = 16
_SELF_CHECK_PLAINTEXT = "encryption-test-123"


class EncryptionError(Exception):
    """Raised when a value cannot be encrypted."""


class DecryptionError(EncryptionError):
    """
    Raised when a ciphertext blob cannot be opened.

    Covers malformed blobs, failed tag verification (tampering) and blobs
    sealed under a different key.
    """


def _b64decode_key(key_b64: str) -> bytes:
    try:
        return base64.b64decode(key_b64.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("encryption key is not valid base64") from exc


class FieldCipher:
    """
    Authenticated encryption of single string values.

    Blob layout: ``base64(nonce[12] || ciphertext || tag[16])``. Every call to
    :meth:`encrypt` draws a fresh nonce from ``os.urandom``; the instance holds
    no mutable state besides the key, so it can be shared across requests.
    """

    def __init__(self, key_b64: str) -> None:
        if not key_b64 or not key_b64.strip():
            raise ConfigurationError("encryption key is empty (set ENCRYPTION_KEY)")
        raw_key = _b64decode_key(key_b64)
        if len(raw_key) != _KEY_BYTES:
            raise ConfigurationError(
                f"encryption key must be 256 bits (32 bytes), got {len(raw_key)}"
            )
        self._aead = AESGCM(raw_key)

    def encrypt(self, plaintext: str | None) -> str | None:
        """Encrypt ``plaintext``; ``None`` and ``""`` pass through unchanged."""
        if plaintext is None or plaintext == "":
            return plaintext
        nonce = os.urandom(_NONCE_BYTES)
        try:
            sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        except Exception as exc:
            logger.error("field_encryption_failed", exc_info=True)
            raise EncryptionError("failed to encrypt value") from exc
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, blob: str | None) -> str | None:
        """Decrypt a blob produced by :meth:`encrypt`."""
        if blob is None or blob == "":
            return blob
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("ciphertext is not valid base64") from exc
        if len(raw) < _NONCE_BYTES + _TAG_BYTES:
            raise DecryptionError("ciphertext is too short")
        nonce = raw[:_NONCE_BYTES]
        try:
            plaintext = self._aead.decrypt(nonce, raw[_NONCE_BYTES:], None)
        except InvalidTag as exc:
            raise DecryptionError(
                "decryption failed: key mismatch or corrupted ciphertext"
            ) from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:  # pragma: no cover - authenticated payloads are ours
            raise DecryptionError("decrypted payload is not valid UTF-8") from exc

    def self_check(self) -> bool:
        """Round-trip a fixed probe value through the cipher."""
        try:
            return self.decrypt(self.encrypt(_SELF_CHECK_PLAINTEXT)) == _SELF_CHECK_PLAINTEXT
        except EncryptionError:
            logger.error("encryption_self_check_failed", exc_info=True)
            return False


@lru_cache
def get_field_cipher() -> FieldCipher:
    """
    Return the process-wide cipher built from ``ENCRYPTION_KEY``.

    Raises ``ConfigurationError`` when the key is missing or malformed.
    """
    cipher = FieldCipher(get_settings().encryption_key)
    logger.info("field_cipher_initialized", algorithm="AES-256-GCM")
    return cipher
