"""Cryptographic primitives for OAuth flows and request signing.

Everything here draws from the ``secrets`` CSPRNG; nothing uses ``random``.
- Random bytes / strings over named charsets
- PKCE verifier + S256 code challenge (RFC 7636)
- OAuth state generation and constant-time validation
- SHA-256 digests, HMAC-SHA256 signing, base64url codec
"""

import base64
import hashlib
import hmac
import secrets
import uuid
from typing import Union

# =============================================================================
# Charsets
# =============================================================================

ALPHANUMERIC_UPPER = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
ALPHANUMERIC_LOWER = "abcdefghijklmnopqrstuvwxyz"
NUMERIC = "0123456789"
ALPHANUMERIC = ALPHANUMERIC_UPPER + ALPHANUMERIC_LOWER + NUMERIC
HEX = "0123456789abcdef"
BASE64_URL = ALPHANUMERIC + "-_"

# RFC 7636 section 4.1 unreserved characters
PKCE = ALPHANUMERIC + "-._~"

PKCE_VERIFIER_MIN_LENGTH = 43
PKCE_VERIFIER_MAX_LENGTH = 128

BytesLike = Union[str, bytes]


def _to_bytes(value: BytesLike) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


# =============================================================================
# Random generation
# =============================================================================


def generate_random_bytes(length: int) -> bytes:
    """Return ``length`` cryptographically secure random bytes."""
    if length < 0:
        raise ValueError("length must be non-negative")
    return secrets.token_bytes(length)


def generate_random_string(length: int, charset: str = ALPHANUMERIC) -> str:
    """Generate a random string drawn uniformly from ``charset``.

    Args:
        length: Number of characters to produce
        charset: Alphabet to draw from (must be non-empty)

    Returns:
        Random string of exactly ``length`` characters
    """
    if length < 0:
        raise ValueError("length must be non-negative")
    if not charset:
        raise ValueError("charset must not be empty")
    return "".join(secrets.choice(charset) for _ in range(length))


def generate_random_hex(length: int) -> str:
    """Generate a random lowercase hex string of ``length`` characters."""
    return generate_random_string(length, HEX)


def generate_random_int(minimum: int, maximum: int) -> int:
    """Random integer in the inclusive range [minimum, maximum]."""
    if maximum < minimum:
        raise ValueError("maximum must be >= minimum")
    return minimum + secrets.randbelow(maximum - minimum + 1)


def generate_nonce(length: int = 32) -> str:
    """Generate a nonce suitable for OpenID Connect requests."""
    return generate_random_string(length, ALPHANUMERIC)


def generate_uuid() -> str:
    """Generate a random (v4) UUID string."""
    return str(uuid.uuid4())


# =============================================================================
# Hashing and encoding
# =============================================================================


def base64url_encode(data: BytesLike) -> str:
    """Base64url-encode without padding."""
    return base64.urlsafe_b64encode(_to_bytes(data)).rstrip(b"=").decode("ascii")


def base64url_decode(data: str) -> bytes:
    """Decode base64url text, tolerating missing padding."""
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def sha256_bytes(data: BytesLike) -> bytes:
    return hashlib.sha256(_to_bytes(data)).digest()


def sha256_hex(data: BytesLike) -> str:
    return hashlib.sha256(_to_bytes(data)).hexdigest()


def sha256_base64(data: BytesLike) -> str:
    return base64.b64encode(sha256_bytes(data)).decode("ascii")


def sha256_base64url(data: BytesLike) -> str:
    return base64url_encode(sha256_bytes(data))


def hmac_sha256(key: BytesLike, message: BytesLike) -> str:
    """HMAC-SHA256 signature, base64 encoded."""
    digest = hmac.new(_to_bytes(key), _to_bytes(message), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_hmac(key: BytesLike, message: BytesLike, signature: str) -> bool:
    """Check an HMAC-SHA256 signature in constant time."""
    expected = hmac_sha256(key, message)
    return hmac.compare_digest(expected.encode("ascii"), _to_bytes(signature))


# =============================================================================
# PKCE and OAuth state
# =============================================================================


def _check_verifier_length(length: int) -> None:
    if not PKCE_VERIFIER_MIN_LENGTH <= length <= PKCE_VERIFIER_MAX_LENGTH:
        raise ValueError(
            f"PKCE verifier length must be between {PKCE_VERIFIER_MIN_LENGTH} "
            f"and {PKCE_VERIFIER_MAX_LENGTH}, got {length}"
        )


def generate_pkce_verifier(length: int = PKCE_VERIFIER_MAX_LENGTH) -> str:
    """Generate a PKCE code verifier from the unreserved character set.

    Raises:
        ValueError: If length is outside 43..128
    """
    _check_verifier_length(length)
    return generate_random_string(length, PKCE)


def generate_code_challenge(verifier: str) -> str:
    """Derive the S256 challenge: base64url(SHA-256(verifier)), unpadded."""
    _check_verifier_length(len(verifier))
    return sha256_base64url(verifier.encode("ascii"))


def generate_oauth_state(length: int = 32) -> str:
    """Generate an opaque OAuth ``state`` value."""
    return generate_random_string(length, BASE64_URL)


def validate_state(expected: str, received: str) -> bool:
    """Compare OAuth state values in constant time.

    Empty values never validate.
    """
    if not expected or not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))
