"""
Exception hierarchy for flux_mask.

All protocol errors inherit from FluxMaskError for easy catching.
"""


class FluxMaskError(Exception):
    """Base exception for all flux-mask errors."""


class ConfigError(FluxMaskError, ValueError):
    """Invalid configuration (unknown option, uncompilable pattern)."""


class HandshakeError(FluxMaskError):
    """Key exchange with the server could not be completed.

    Possible causes:
    - Public key endpoint unreachable or returned an error
    - Key exchange endpoint rejected the wrapped key

    Retryable: a later initialize() starts a fresh handshake.
    """


class KeyExchangeError(HandshakeError):
    """Asymmetric wrap or unwrap of the symmetric key failed.

    Possible causes:
    - Malformed or non-RSA public key PEM
    - OAEP padding / hash mismatch
    - Ciphertext size invalid for the private key
    - Unwrapped key has the wrong length

    Fatal for the handshake attempt that raised it.
    """


class EncryptionError(FluxMaskError):
    """Failed to encrypt a payload (invalid or destroyed key)."""


class DecryptionError(FluxMaskError):
    """Failed to decrypt an envelope.

    Never accompanied by partial plaintext. See the subclasses for the cause.
    """


class EnvelopeError(DecryptionError):
    """Envelope structure is malformed.

    - Not base64 / not JSON
    - Missing iv, authTag or data field
    - IV or tag of the wrong length
    """


class AuthenticationError(DecryptionError):
    """Authentication tag did not verify.

    The envelope was tampered with, corrupted in transit, or sealed under a
    different key. These causes are indistinguishable by design of AEAD.
    """


class NotInitializedError(FluxMaskError):
    """No session key is established for this operation."""


class SessionNotFoundError(FluxMaskError):
    """Session identifier is unknown or its session has expired."""
