"""
Cryptographic hashing utilities.

Provides the SHA-256 and HMAC-SHA256 primitives used by request signing
and payload hashing, so every caller agrees on algorithm and encoding.

IMPORTANT DESIGN RULE:
- This module hashes bytes, and bytes only.
- Text inputs are accepted only where the signing protocol defines them
  as UTF-8 strings (scope components, canonical requests).
"""

import hashlib
import hmac
from typing import Union


BytesLike = Union[bytes, bytearray]


def sha256_hex(data: BytesLike) -> str:
    """
    Lower-case hex SHA-256 digest of raw bytes.

    Raises TypeError for non-bytes input so that text is never hashed
    with an implicit encoding.
    """
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError(
            "sha256_hex expects bytes, "
            f"got {type(data).__name__}"
        )

    return hashlib.sha256(data).hexdigest()


def hmac_sha256(key: BytesLike, message: str) -> bytes:
    """Raw HMAC-SHA256 of a UTF-8 message."""
    return hmac.new(bytes(key), message.encode("utf-8"), hashlib.sha256).digest()


def hmac_sha256_hex(key: BytesLike, message: str) -> str:
    """Hex HMAC-SHA256 of a UTF-8 message."""
    return hmac.new(bytes(key), message.encode("utf-8"), hashlib.sha256).hexdigest()


# Digest of the empty payload, used by bodyless requests (DELETE, GET).
EMPTY_PAYLOAD_SHA256 = sha256_hex(b"")
