"""Unit tests for identifier normalization and lookup digests."""

import base64

import pytest

from dietician_core.core.config import ConfigurationError
from dietician_core.core.crypto import (
    LOOKUP_DIGEST_ALGORITHM,
    ensure_lookup_digest_available,
    identifier_search_key,
    lookup_hash,
    normalize_identifier,
)
from dietician_core.core.crypto.lookup import LOOKUP_DIGEST_LENGTH


class TestNormalizeIdentifier:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("  User@Example.COM ", "user@example.com"),
            ("user@example.com", "user@example.com"),
            ("\tMiXeD@Host.Org\n", "mixed@host.org"),
        ],
    )
    def test_trims_and_lowercases(self, raw: str, expected: str) -> None:
        assert normalize_identifier(raw) == expected

    def test_none_and_empty_pass_through(self) -> None:
        assert normalize_identifier(None) is None
        assert normalize_identifier("") == ""

    def test_whitespace_only_becomes_empty(self) -> None:
        assert normalize_identifier("   ") == ""

    def test_idempotent(self) -> None:
        once = normalize_identifier("  Someone@Example.com")
        assert normalize_identifier(once) == once


class TestLookupHash:
    def test_known_vectors(self) -> None:
        assert lookup_hash("") == "47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU="
        assert lookup_hash("abc") == "ungWv48Bz+pBQUDeXa4iI7ADYaOWF3qctBD/YfIAFa0="

    def test_deterministic_and_fixed_length(self) -> None:
        first = lookup_hash("user@example.com")
        assert first == lookup_hash("user@example.com")
        assert len(first) == LOOKUP_DIGEST_LENGTH
        assert len(base64.b64decode(first)) == 32

    def test_distinct_inputs_give_distinct_digests(self) -> None:
        assert lookup_hash("a@example.com") != lookup_hash("b@example.com")

    def test_case_sensitive_on_its_own(self) -> None:
        # normalization is the caller's job; the digest itself does not fold case
        assert lookup_hash("User@example.com") != lookup_hash("user@example.com")

    def test_algorithm_available(self) -> None:
        assert LOOKUP_DIGEST_ALGORITHM == "sha256"
        ensure_lookup_digest_available()

    def test_missing_algorithm_is_a_configuration_error(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def unsupported(name: str, *args: object, **kwargs: object) -> None:
            raise ValueError(f"unsupported hash type {name}")

        monkeypatch.setattr("dietician_core.core.crypto.lookup.hashlib.new", unsupported)

        with pytest.raises(ConfigurationError):
            ensure_lookup_digest_available()
        with pytest.raises(ConfigurationError):
            lookup_hash("user@example.com")
        with pytest.raises(ConfigurationError):
            identifier_search_key("user@example.com")


class TestIdentifierSearchKey:
    def test_variants_of_same_address_share_a_key(self) -> None:
        key = identifier_search_key("user@example.com")
        assert identifier_search_key("  USER@Example.com  ") == key
        assert key == lookup_hash("user@example.com")

    @pytest.mark.parametrize("raw", ["", "   "])
    def test_rejects_empty(self, raw: str) -> None:
        with pytest.raises(ValueError):
            identifier_search_key(raw)
