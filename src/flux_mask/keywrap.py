"""
RSA-OAEP wrapping of session keys.

The client wraps its freshly generated SymmetricKey under the server's public
key; the server unwraps it with its private key. OAEP uses MGF1-SHA256 and
SHA-256 on both sides.

Public keys received over the wire may have had their PEM delimiters and line
breaks stripped for transport; normalize_public_key_pem() rebuilds a standard
PEM and fails fast when the result does not load as an RSA public key.
"""

import re
from functools import lru_cache

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from flux_mask._logging import get_logger
from flux_mask.constants import (
    PEM_LINE_LENGTH,
    PEM_PUBLIC_KEY_FOOTER,
    PEM_PUBLIC_KEY_HEADER,
    RSA_MIN_KEY_SIZE,
    SYMMETRIC_KEY_SIZE,
)
from flux_mask.exceptions import KeyExchangeError
from flux_mask.headers import b64_decode, b64_encode
from flux_mask.keys import SymmetricKey

__all__ = [
    "load_private_key",
    "load_public_key",
    "normalize_public_key_pem",
    "unwrap_key",
    "wrap_key",
]

_logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")
_BASE64_BODY = re.compile(r"[A-Za-z0-9+/]+={0,2}")


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def normalize_public_key_pem(raw: str | bytes) -> str:
    """
    Rebuild a standard SPKI PEM from a possibly stripped transport form.

    Accepts a full PEM, a PEM body without delimiters, or either of those with
    arbitrary whitespace. The body is folded at 64 characters and wrapped with
    the BEGIN/END PUBLIC KEY lines.

    Args:
        raw: Public key text as received

    Returns:
        Normalized PEM string

    Raises:
        KeyExchangeError: If the result is not a valid RSA public key
    """
    text = raw.decode("ascii", errors="replace") if isinstance(raw, bytes) else raw
    body = text.replace(PEM_PUBLIC_KEY_HEADER, "").replace(PEM_PUBLIC_KEY_FOOTER, "")
    body = _WHITESPACE.sub("", body)

    if not body or not _BASE64_BODY.fullmatch(body):
        raise KeyExchangeError("Public key is empty or not base64 encoded")

    lines = [body[i : i + PEM_LINE_LENGTH] for i in range(0, len(body), PEM_LINE_LENGTH)]
    pem = "\n".join([PEM_PUBLIC_KEY_HEADER, *lines, PEM_PUBLIC_KEY_FOOTER]) + "\n"

    # Fail fast instead of producing ciphertext under a garbage key
    load_public_key(pem)
    return pem


@lru_cache(maxsize=16)
def load_public_key(pem: str) -> rsa.RSAPublicKey:
    """
    Load and validate an RSA public key from PEM.

    Raises:
        KeyExchangeError: If the PEM is malformed, not RSA, or too small
    """
    try:
        key = serialization.load_pem_public_key(pem.encode("ascii"))
    except (ValueError, TypeError, UnicodeEncodeError) as e:
        raise KeyExchangeError(f"Invalid public key PEM: {e}") from e

    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyExchangeError("Public key is not an RSA key")
    if key.key_size < RSA_MIN_KEY_SIZE:
        raise KeyExchangeError(f"RSA public key too small: {key.key_size} bits (minimum {RSA_MIN_KEY_SIZE})")
    return key


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    """
    Load and validate an unencrypted RSA private key from PEM.

    Not cached: callers hold the returned key for as long as they need it.

    Raises:
        KeyExchangeError: If the PEM is malformed or not RSA
    """
    try:
        key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    except (ValueError, TypeError, UnicodeEncodeError) as e:
        raise KeyExchangeError("Invalid private key PEM") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyExchangeError("Private key is not an RSA key")
    return key


def wrap_key(symmetric_key: SymmetricKey, public_key: str) -> str:
    """
    Encrypt a session key under an RSA public key.

    Args:
        symmetric_key: Key to wrap
        public_key: Recipient PEM (already normalized)

    Returns:
        base64 RSA-OAEP ciphertext

    Raises:
        KeyExchangeError: If the public key is invalid or the key is destroyed
    """
    rsa_key = load_public_key(public_key)
    try:
        wrapped = rsa_key.encrypt(symmetric_key.view().tobytes(), _oaep())
    except ValueError as e:
        raise KeyExchangeError(f"Failed to wrap symmetric key: {e}") from e

    _logger.debug("Symmetric key wrapped: rsa_bits=%d wrapped_size=%d", rsa_key.key_size, len(wrapped))
    return b64_encode(wrapped)


def unwrap_key(wrapped: str, private_key: str | rsa.RSAPrivateKey) -> SymmetricKey:
    """
    Recover a session key wrapped by wrap_key().

    Args:
        wrapped: base64 RSA-OAEP ciphertext
        private_key: Recipient private key (PEM or loaded)

    Returns:
        The unwrapped SymmetricKey

    Raises:
        KeyExchangeError: On invalid base64, wrong ciphertext size, OAEP
            padding/hash mismatch, or an unwrapped key of the wrong length
    """
    rsa_key = load_private_key(private_key) if isinstance(private_key, str) else private_key

    try:
        ciphertext = b64_decode(wrapped)
    except ValueError as e:
        raise KeyExchangeError("Wrapped key is not valid base64") from e

    expected_size = (rsa_key.key_size + 7) // 8
    if len(ciphertext) != expected_size:
        raise KeyExchangeError(f"Wrapped key size {len(ciphertext)} does not match RSA modulus size {expected_size}")

    try:
        material = rsa_key.decrypt(ciphertext, _oaep())
    except ValueError as e:
        # Don't distinguish padding failures further (oracle hygiene)
        raise KeyExchangeError("Failed to unwrap symmetric key") from e

    if len(material) != SYMMETRIC_KEY_SIZE:
        raise KeyExchangeError(f"Unwrapped key has invalid length: {len(material)} bytes")

    return SymmetricKey(material)
