"""
Key material for the flux-mask session protocol.

- KeyPair: RSA identity of the party terminating encryption (PEM encoded)
- SymmetricKey: per-session AES-256 key with zeroization on destroy()
- Session identifier generation and hashing

Security Note:
    SymmetricKey keeps its bytes in a single mutable buffer so destroy() can
    wipe them. Avoid bytes(key) copies outside the codec and key wrap.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from flux_mask.constants import RSA_KEY_SIZE, RSA_MIN_KEY_SIZE, RSA_PUBLIC_EXPONENT, SESSION_ID_SIZE, SYMMETRIC_KEY_SIZE

__all__ = [
    "KeyPair",
    "SymmetricKey",
    "generate_key_pair",
    "generate_session_id",
    "generate_symmetric_key",
    "hash_session_id",
    "is_valid_session_id",
]

_SESSION_ID_PATTERN = re.compile(rf"[0-9a-f]{{{SESSION_ID_SIZE * 2}}}")


@dataclass(frozen=True)
class KeyPair:
    """PEM-encoded RSA key pair."""

    public_key: str
    """SubjectPublicKeyInfo PEM."""

    private_key: str = ""
    """Unencrypted PKCS#8 PEM."""

    def __repr__(self) -> str:
        return "KeyPair(public_key=..., private_key=<redacted>)"


class SymmetricKey:
    """
    256-bit AES key with explicit zeroization.

    The key is never edited in place except by destroy(); rotating a session
    key means creating a new SymmetricKey.
    """

    __slots__ = ("_destroyed", "_material")

    def __init__(self, material: bytes | bytearray | memoryview) -> None:
        if len(material) != SYMMETRIC_KEY_SIZE:
            raise ValueError(f"Symmetric key must be {SYMMETRIC_KEY_SIZE} bytes, got {len(material)}")
        self._material = bytearray(material)
        self._destroyed = False

    @classmethod
    def generate(cls) -> SymmetricKey:
        """Create a fresh random key from the OS CSPRNG."""
        return cls(secrets.token_bytes(SYMMETRIC_KEY_SIZE))

    @property
    def destroyed(self) -> bool:
        """Whether destroy() has wiped this key."""
        return self._destroyed

    def view(self) -> memoryview:
        """
        Read-only view over the key bytes (no copy).

        Raises:
            ValueError: If the key has been destroyed
        """
        if self._destroyed:
            raise ValueError("Symmetric key has been destroyed")
        return memoryview(self._material).toreadonly()

    def destroy(self) -> None:
        """Overwrite the key bytes with zeros. Idempotent."""
        # Same-length slice assignment keeps the buffer in place
        self._material[:] = bytes(len(self._material))
        self._destroyed = True

    def __len__(self) -> int:
        return len(self._material)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SymmetricKey):
            return NotImplemented
        return hmac.compare_digest(self._material, other._material)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        state = "destroyed" if self._destroyed else "redacted"
        return f"SymmetricKey(<{state}>)"


def generate_key_pair(key_size: int = RSA_KEY_SIZE) -> KeyPair:
    """
    Generate an RSA key pair for key exchange.

    Args:
        key_size: Modulus size in bits (>= 2048)

    Returns:
        KeyPair with SPKI public and PKCS#8 private PEM strings
    """
    if key_size < RSA_MIN_KEY_SIZE:
        raise ValueError(f"RSA key size must be at least {RSA_MIN_KEY_SIZE} bits")

    private_key = rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=key_size)
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return KeyPair(public_key=public_pem.decode("ascii"), private_key=private_pem.decode("ascii"))


def generate_symmetric_key() -> SymmetricKey:
    """Generate a random AES-256 session key."""
    return SymmetricKey.generate()


def generate_session_id() -> str:
    """Generate a random 256-bit session identifier (64 hex chars)."""
    return secrets.token_hex(SESSION_ID_SIZE)


def is_valid_session_id(session_id: object) -> bool:
    """Whether *session_id* has the shape produced by generate_session_id()."""
    return isinstance(session_id, str) and _SESSION_ID_PATTERN.fullmatch(session_id) is not None


def hash_session_id(session_id: str) -> str:
    """SHA-256 hex digest of a session id, used as the storage key."""
    return hashlib.sha256(session_id.encode("utf-8")).hexdigest()
