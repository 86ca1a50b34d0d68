"""
Tests for API key hashing and key extraction from request headers.
"""

from starlette.datastructures import Headers

from app.auth.dependencies import extract_api_key
from app.auth.hashing import (
    DISPLAY_PREFIX_LENGTH,
    KEY_SCHEME,
    display_prefix,
    generate_api_key,
    hash_api_key,
)


class TestGenerateApiKey:
    def test_raw_key_has_scheme_and_256_bits(self):
        raw, _ = generate_api_key()
        assert raw.startswith(KEY_SCHEME)
        assert len(raw) == len(KEY_SCHEME) + 64

    def test_hash_matches_raw_key(self):
        raw, key_hash = generate_api_key()
        assert key_hash == hash_api_key(raw)
        assert raw not in key_hash

    def test_keys_are_unique(self):
        assert len({generate_api_key()[0] for _ in range(50)}) == 50


class TestHashApiKey:
    def test_is_deterministic_sha256_hex(self):
        assert hash_api_key("nxq_abc") == hash_api_key("nxq_abc")
        assert len(hash_api_key("nxq_abc")) == 64

    def test_different_keys_different_hashes(self):
        assert hash_api_key("nxq_a") != hash_api_key("nxq_b")


class TestDisplayPrefix:
    def test_prefix_is_scheme_plus_eight_chars(self):
        raw, _ = generate_api_key()
        prefix = display_prefix(raw)
        assert len(prefix) == DISPLAY_PREFIX_LENGTH
        assert prefix.startswith(KEY_SCHEME)
        assert raw.startswith(prefix)


class TestExtractApiKey:
    def test_bearer_token(self):
        assert extract_api_key(Headers({"Authorization": "Bearer nxq_123"})) == "nxq_123"

    def test_bearer_is_case_insensitive(self):
        assert extract_api_key(Headers({"Authorization": "bearer nxq_123"})) == "nxq_123"

    def test_x_api_key_header(self):
        assert extract_api_key(Headers({"X-API-Key": " nxq_456 "})) == "nxq_456"

    def test_bearer_wins_over_x_api_key(self):
        headers = Headers({"Authorization": "Bearer nxq_1", "X-API-Key": "nxq_2"})
        assert extract_api_key(headers) == "nxq_1"

    def test_other_scheme_falls_back_to_x_api_key(self):
        headers = Headers({"Authorization": "Basic dXNlcjpwYXNz", "X-API-Key": "nxq_2"})
        assert extract_api_key(headers) == "nxq_2"

    def test_missing_returns_none(self):
        assert extract_api_key(Headers({})) is None
        assert extract_api_key(Headers({"Authorization": "Bearer "})) is None
