"""Cryptographic primitives for the Haystack auth handshake.

Thin, byte-exact helpers over ``hashlib``/``hmac``/``base64``. Text
arguments are encoded as UTF-8; everything else is raw bytes.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Final

from .errors import ProtocolError

B64_ALPHABET: Final = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
)

# SCRAM hash name -> (hashlib name, digest size in bytes)
HASHES: Final[dict[str, tuple[str, int]]] = {
    "sha-1": ("sha1", 20),
    "sha-256": ("sha256", 32),
}


def _bytes(data: bytes | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


def get_hash(name: str | None) -> tuple[str, int]:
    """Resolve a SCRAM hash name (``SHA-256``) to its hashlib name and size."""
    entry = HASHES.get((name or "").lower())
    if entry is None:
        raise ProtocolError(f"Unsupported hash function: {name}")
    return entry


def digest(hash_name: str, data: bytes | str) -> bytes:
    return hashlib.new(hash_name, _bytes(data)).digest()


def sha1(data: bytes | str) -> bytes:
    return digest("sha1", data)


def sha256(data: bytes | str) -> bytes:
    return digest("sha256", data)


def hmac_digest(hash_name: str, key: bytes | str, data: bytes | str) -> bytes:
    return hmac.new(_bytes(key), _bytes(data), hash_name).digest()


def pbkdf2_hmac(
    hash_name: str,
    password: bytes | str,
    salt: bytes,
    iterations: int,
    length: int | None = None,
) -> bytes:
    """Derive a key with PBKDF2 using HMAC over ``hash_name``."""
    return hashlib.pbkdf2_hmac(hash_name, _bytes(password), salt, iterations, length)


def pbkdf2_hmac_sha256(
    password: bytes | str, salt: bytes, iterations: int, length: int = 32
) -> bytes:
    return pbkdf2_hmac("sha256", password, salt, iterations, length)


def xor(a: bytes, b: bytes) -> bytes:
    """XOR two equal-length byte strings."""
    if len(a) != len(b):
        raise ValueError("Lengths don't match")
    return bytes(x ^ y for x, y in zip(a, b, strict=True))


def b64encode(data: bytes | str) -> str:
    return base64.b64encode(_bytes(data)).decode("ascii")


def b64decode(text: str) -> bytes:
    """Decode standard or URL-safe base64, tolerating missing padding."""
    text = text.strip().replace("-", "+").replace("_", "/")
    return base64.b64decode(text + "=" * (-len(text) % 4))


def b64url_encode(data: bytes | str) -> str:
    """Base64url without padding."""
    return base64.urlsafe_b64encode(_bytes(data)).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    return b64decode(text)


def nonce(length: int = 24) -> str:
    """Random printable nonce drawn from the base64 alphabet."""
    return "".join(secrets.choice(B64_ALPHABET) for _ in range(length))
