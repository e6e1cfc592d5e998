"""
Envelope codec: AES-256-GCM encryption of payloads.

Envelope format (sent as the HTTP body):

    base64( UTF-8 JSON {"iv": b64(12B), "authTag": b64(16B), "data": b64(N)} )

IV, tag and ciphertext are all recoverable from the envelope alone; nothing
but the session key is needed to open it. A fresh random IV is drawn for every
encrypt() call, so an IV never repeats under one key in practice (2^-96 per
pair of messages).
"""

import json
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from flux_mask.constants import (
    AES_GCM_IV_SIZE,
    AES_GCM_TAG_SIZE,
    ENVELOPE_FIELD_DATA,
    ENVELOPE_FIELD_IV,
    ENVELOPE_FIELD_TAG,
)
from flux_mask.exceptions import AuthenticationError, DecryptionError, EncryptionError, EnvelopeError
from flux_mask.headers import b64_decode, b64_encode
from flux_mask.keys import SymmetricKey

__all__ = [
    "Envelope",
    "decode_envelope",
    "decrypt",
    "encode_envelope",
    "encrypt",
]


@dataclass(frozen=True)
class Envelope:
    """Parsed envelope."""

    iv: bytes
    """96-bit random nonce."""

    auth_tag: bytes
    """128-bit GCM authentication tag."""

    ciphertext: bytes
    """Encrypted payload, same length as the plaintext."""

    def validate(self) -> None:
        """
        Validate field sizes.

        Raises:
            EnvelopeError: If IV or tag has the wrong length
        """
        if len(self.iv) != AES_GCM_IV_SIZE:
            raise EnvelopeError(f"Invalid IV length: {len(self.iv)} bytes (expected {AES_GCM_IV_SIZE})")
        if len(self.auth_tag) != AES_GCM_TAG_SIZE:
            raise EnvelopeError(f"Invalid auth tag length: {len(self.auth_tag)} bytes (expected {AES_GCM_TAG_SIZE})")


def encode_envelope(envelope: Envelope) -> str:
    """
    Serialize an envelope to its transportable string.

    Args:
        envelope: IV, tag and ciphertext

    Returns:
        base64 string of the JSON record
    """
    record = {
        ENVELOPE_FIELD_IV: b64_encode(envelope.iv),
        ENVELOPE_FIELD_TAG: b64_encode(envelope.auth_tag),
        ENVELOPE_FIELD_DATA: b64_encode(envelope.ciphertext),
    }
    return b64_encode(json.dumps(record, separators=(",", ":")).encode("utf-8"))


def decode_envelope(data: str | bytes) -> Envelope:
    """
    Parse a transportable string back into an envelope.

    Args:
        data: Envelope as produced by encode_envelope()

    Returns:
        Validated Envelope

    Raises:
        EnvelopeError: If the envelope is malformed
    """
    if isinstance(data, bytes):
        data = data.decode("ascii", errors="replace")
    data = data.strip()
    if not data:
        raise EnvelopeError("Envelope is empty")

    try:
        record: Any = json.loads(b64_decode(data).decode("utf-8"))
    except (ValueError, UnicodeDecodeError, RecursionError) as e:
        raise EnvelopeError("Envelope is not base64-encoded JSON") from e

    if not isinstance(record, dict):
        raise EnvelopeError("Envelope is not a JSON object")

    fields: dict[str, bytes] = {}
    for name in (ENVELOPE_FIELD_IV, ENVELOPE_FIELD_TAG, ENVELOPE_FIELD_DATA):
        value = record.get(name)
        if not isinstance(value, str):
            raise EnvelopeError(f"Envelope field missing or not a string: {name}")
        try:
            fields[name] = b64_decode(value)
        except ValueError as e:
            raise EnvelopeError(f"Envelope field is not base64: {name}") from e

    envelope = Envelope(
        iv=fields[ENVELOPE_FIELD_IV],
        auth_tag=fields[ENVELOPE_FIELD_TAG],
        ciphertext=fields[ENVELOPE_FIELD_DATA],
    )
    envelope.validate()
    return envelope


def _cipher(key: SymmetricKey) -> AESGCM:
    """Build the AEAD for *key* (raises ValueError on destroyed/invalid key)."""
    return AESGCM(key.view())


def encrypt(plaintext: bytes | str, key: SymmetricKey) -> str:
    """
    Encrypt a payload into a transportable envelope.

    Args:
        plaintext: Raw bytes, or text (encoded as UTF-8)
        key: Session key

    Returns:
        Envelope string

    Raises:
        EncryptionError: If the cipher cannot be built (destroyed key)
    """
    data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)

    try:
        cipher = _cipher(key)
    except ValueError as e:
        raise EncryptionError(f"Cannot build cipher: {e}") from e

    iv = os.urandom(AES_GCM_IV_SIZE)
    sealed = cipher.encrypt(iv, data, associated_data=None)

    # AESGCM appends the tag to the ciphertext
    return encode_envelope(
        Envelope(
            iv=iv,
            auth_tag=sealed[-AES_GCM_TAG_SIZE:],
            ciphertext=sealed[:-AES_GCM_TAG_SIZE],
        )
    )


def decrypt(data: str | bytes, key: SymmetricKey) -> bytes:
    """
    Open an envelope.

    Args:
        data: Envelope string from encrypt()
        key: Session key the envelope was sealed under

    Returns:
        Plaintext bytes

    Raises:
        EnvelopeError: If the envelope is malformed
        AuthenticationError: If the tag does not verify (tampering, corruption
            or wrong key)
        DecryptionError: Base of both; also raised for a destroyed key
    """
    envelope = decode_envelope(data)

    try:
        cipher = _cipher(key)
    except ValueError as e:
        raise DecryptionError("Session key unavailable") from e

    try:
        return cipher.decrypt(envelope.iv, envelope.ciphertext + envelope.auth_tag, associated_data=None)
    except InvalidTag as e:
        raise AuthenticationError("Authentication tag verification failed") from e
