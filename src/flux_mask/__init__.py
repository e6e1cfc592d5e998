"""
Hybrid-encryption session protocol for HTTP request and response bodies.

A client fetches the server's RSA public key, generates an AES-256 session
key, wraps it with RSA-OAEP and posts it to the server. Afterwards every
protected request and response body travels as an AES-256-GCM envelope,
identified by the X-Flux-Mask-Session header.

Usage (Server - FastAPI):
    from flux_mask.middleware.fastapi import FluxMaskMiddleware

    app = FastAPI()
    app.add_middleware(FluxMaskMiddleware, key_pair=key_pair, session_timeout=3600)

Usage (Client - aiohttp):
    from flux_mask.middleware.aiohttp import FluxMaskClientSession

    async with FluxMaskClientSession(base_url="https://api.example.com") as session:
        response = await session.post("/api/users", json={"name": "a"})
        data = await session.read(response)
"""

from flux_mask.client import ClientHandshakeState, FluxMaskClient, HandshakeState, KeyExchangeTransport
from flux_mask.config import DEFAULT_CONFIG, FluxMaskConfig, merge_config
from flux_mask.core import FluxMaskServer
from flux_mask.envelope import Envelope, decode_envelope, decrypt, encode_envelope, encrypt
from flux_mask.exceptions import (
    AuthenticationError,
    ConfigError,
    DecryptionError,
    EncryptionError,
    EnvelopeError,
    FluxMaskError,
    HandshakeError,
    KeyExchangeError,
    NotInitializedError,
    SessionNotFoundError,
)
from flux_mask.keys import (
    KeyPair,
    SymmetricKey,
    generate_key_pair,
    generate_session_id,
    generate_symmetric_key,
    hash_session_id,
)
from flux_mask.keywrap import normalize_public_key_pem, unwrap_key, wrap_key
from flux_mask.policy import requires_encryption, should_obfuscate
from flux_mask.session import SessionRecord, SessionStore

__all__ = [
    # Config
    "DEFAULT_CONFIG",
    "FluxMaskConfig",
    "merge_config",
    "requires_encryption",
    "should_obfuscate",
    # Keys
    "KeyPair",
    "SymmetricKey",
    "generate_key_pair",
    "generate_session_id",
    "generate_symmetric_key",
    "hash_session_id",
    "normalize_public_key_pem",
    "unwrap_key",
    "wrap_key",
    # Envelope
    "Envelope",
    "decode_envelope",
    "decrypt",
    "encode_envelope",
    "encrypt",
    # Sessions
    "SessionRecord",
    "SessionStore",
    # Client / server
    "ClientHandshakeState",
    "FluxMaskClient",
    "FluxMaskServer",
    "HandshakeState",
    "KeyExchangeTransport",
    # Exceptions
    "AuthenticationError",
    "ConfigError",
    "DecryptionError",
    "EncryptionError",
    "EnvelopeError",
    "FluxMaskError",
    "HandshakeError",
    "KeyExchangeError",
    "NotInitializedError",
    "SessionNotFoundError",
]

__version__ = "0.1.0"
