"""Tests for the crypto primitives."""

import pytest

from protocolos.tools import crypto


class TestRandomGeneration:
    """Tests for random strings, hex and integers."""

    def test_random_string_length_and_charset(self):
        """Test that generated strings have the requested length and alphabet."""
        value = crypto.generate_random_string(64, crypto.NUMERIC)
        assert len(value) == 64
        assert set(value) <= set(crypto.NUMERIC)

    def test_random_string_rejects_empty_charset(self):
        with pytest.raises(ValueError):
            crypto.generate_random_string(8, "")

    def test_random_strings_differ(self):
        assert crypto.generate_random_string(32) != crypto.generate_random_string(32)

    def test_random_hex(self):
        value = crypto.generate_random_hex(16)
        assert len(value) == 16
        int(value, 16)

    def test_random_int_inclusive_range(self):
        values = {crypto.generate_random_int(1, 3) for _ in range(200)}
        assert values <= {1, 2, 3}

    def test_random_int_invalid_range(self):
        with pytest.raises(ValueError):
            crypto.generate_random_int(5, 1)

    def test_uuid_format(self):
        value = crypto.generate_uuid()
        assert len(value) == 36
        assert value[14] == "4"


class TestPkce:
    """Tests for PKCE verifiers and challenges."""

    def test_rfc7636_vector(self):
        """Test the S256 challenge against the RFC 7636 appendix B example."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert crypto.generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_verifier_uses_unreserved_chars(self):
        verifier = crypto.generate_pkce_verifier()
        assert len(verifier) == 128
        assert set(verifier) <= set(crypto.PKCE)

    @pytest.mark.parametrize("length", [42, 129])
    def test_verifier_length_bounds(self, length):
        with pytest.raises(ValueError):
            crypto.generate_pkce_verifier(length)

    def test_challenge_has_no_padding(self):
        challenge = crypto.generate_code_challenge(crypto.generate_pkce_verifier(43))
        assert "=" not in challenge
        assert len(challenge) == 43


class TestStateAndHmac:
    """Tests for OAuth state and HMAC signing."""

    def test_validate_state(self):
        state = crypto.generate_oauth_state()
        assert crypto.validate_state(state, state)
        assert not crypto.validate_state(state, state + "x")

    def test_empty_state_never_validates(self):
        assert not crypto.validate_state("", "")

    def test_hmac_roundtrip(self):
        signature = crypto.hmac_sha256("key", "message")
        assert crypto.verify_hmac("key", "message", signature)
        assert not crypto.verify_hmac("other", "message", signature)

    def test_base64url_decode_tolerates_missing_padding(self):
        assert crypto.base64url_decode(crypto.base64url_encode(b"ab")) == b"ab"

    def test_sha256_hex_known_value(self):
        assert crypto.sha256_hex("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
