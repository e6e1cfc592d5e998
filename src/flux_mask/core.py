"""
Framework-agnostic server side of the flux-mask protocol.

FluxMaskServer terminates encryption for one server identity: it owns the RSA
key pair and a SessionStore, handles key exchange, and opens/seals payloads
per session. The ASGI middleware is built on it; use it directly from any
other framework.

Sessions are stored under hash_session_id(session_id), so the store never
holds the bearer identifier itself.

Usage (Server - Flask/Django example):
    server = FluxMaskServer(generate_key_pair(), session_timeout=3600)

    # GET /__flux-mask/key/public
    return Response(server.public_key_pem(), content_type="text/plain")

    # POST /__flux-mask/key
    server.exchange_key(request.get_json())

    # Protected request
    if is_encrypted(request.headers):
        session_id = request.headers[HEADER_FLUX_MASK_SESSION]
        plaintext = server.decrypt_request(session_id, request.get_data())
        # Process request...
        body = server.encrypt_response(session_id, json.dumps(result))
        return Response(body, headers=build_encrypted_headers(session_id))
"""

from __future__ import annotations

import types
from collections.abc import Mapping
from typing import Any

from typing_extensions import Self

from flux_mask._logging import get_logger, session_tag
from flux_mask.constants import (
    DEFAULT_CLEANUP_INTERVAL,
    DEFAULT_SESSION_TIMEOUT,
    FIELD_ENCRYPTED_KEY,
    FIELD_SESSION_ID,
    PEM_PUBLIC_KEY_FOOTER,
    PEM_PUBLIC_KEY_HEADER,
)
from flux_mask.envelope import decrypt, encrypt
from flux_mask.exceptions import KeyExchangeError, SessionNotFoundError
from flux_mask.keys import KeyPair, SymmetricKey, generate_key_pair, hash_session_id, is_valid_session_id
from flux_mask.keywrap import load_private_key, load_public_key, unwrap_key
from flux_mask.session import SessionStore

__all__ = [
    "FluxMaskServer",
]

_logger = get_logger(__name__)


class FluxMaskServer:
    """
    Key-exchange endpoint logic and per-session payload encryption.

    Example:
        server = FluxMaskServer()
        session_id = server.exchange_key({"encryptedKey": wrapped, "sessionId": sid})
        plaintext = server.decrypt_request(session_id, envelope)
    """

    def __init__(
        self,
        key_pair: KeyPair | None = None,
        *,
        session_store: SessionStore | None = None,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
    ) -> None:
        """
        Initialize server engine.

        Args:
            key_pair: RSA identity (generated if omitted)
            session_store: Existing store (created with the timeouts below if omitted)
            session_timeout: Session lifetime in seconds for a created store
            cleanup_interval: Background sweep period for a created store
        """
        self.key_pair = key_pair or generate_key_pair()
        # Validate both halves up front; the parsed private key lives as long as the server
        load_public_key(self.key_pair.public_key)
        self._private_key = load_private_key(self.key_pair.private_key)

        self.sessions = session_store or SessionStore(session_timeout, cleanup_interval=cleanup_interval)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.close()

    def public_key_pem(self, *, strip: bool = False) -> str:
        """
        Public key as served to clients.

        Args:
            strip: Remove PEM delimiters and line breaks (compact transport form)
        """
        pem = self.key_pair.public_key
        if not strip:
            return pem
        body = pem.replace(PEM_PUBLIC_KEY_HEADER, "").replace(PEM_PUBLIC_KEY_FOOTER, "")
        return "".join(body.split())

    # =========================================================================
    # Key exchange
    # =========================================================================

    def exchange_key(self, payload: Mapping[str, Any]) -> str:
        """
        Accept a client's wrapped session key.

        Args:
            payload: Parsed JSON body {"encryptedKey": str, "sessionId": str}

        Returns:
            The session id now bound to the unwrapped key

        Raises:
            KeyExchangeError: If the payload is malformed or unwrap fails
        """
        if not isinstance(payload, Mapping):
            raise KeyExchangeError("Key exchange payload must be a JSON object")

        encrypted_key = payload.get(FIELD_ENCRYPTED_KEY)
        session_id = payload.get(FIELD_SESSION_ID)

        if not isinstance(encrypted_key, str) or not encrypted_key:
            raise KeyExchangeError(f"Missing {FIELD_ENCRYPTED_KEY}")
        if not is_valid_session_id(session_id):
            raise KeyExchangeError(f"Invalid {FIELD_SESSION_ID}")

        symmetric_key = unwrap_key(encrypted_key, self._private_key)
        self.sessions.put(hash_session_id(session_id), symmetric_key)
        _logger.debug("Key exchange accepted: session=%s", session_tag(session_id))
        return session_id

    # =========================================================================
    # Sessions
    # =========================================================================

    def session_key(self, session_id: str) -> SymmetricKey | None:
        """Key for a live session, or None when unknown or expired."""
        if not session_id:
            return None
        return self.sessions.get(hash_session_id(session_id))

    def _require_key(self, session_id: str | None) -> SymmetricKey:
        key = self.session_key(session_id) if session_id else None
        if key is None:
            _logger.debug("Unknown or expired session: session=%s", session_tag(session_id))
            raise SessionNotFoundError("Unknown or expired session")
        return key

    def end_session(self, session_id: str) -> None:
        """Explicit teardown of one session."""
        self.sessions.delete(hash_session_id(session_id))

    def decrypt_request(self, session_id: str | None, envelope: str | bytes) -> bytes:
        """
        Open a protected request body.

        Raises:
            SessionNotFoundError: If the session is unknown or expired
            DecryptionError: If the envelope is malformed or fails authentication
        """
        return decrypt(envelope, self._require_key(session_id))

    def encrypt_response(self, session_id: str | None, body: bytes | str) -> str:
        """
        Seal a response body for the session that made the request.

        Raises:
            SessionNotFoundError: If the session is unknown or expired
            EncryptionError: If encryption failed
        """
        return encrypt(body, self._require_key(session_id))

    def close(self) -> None:
        """Stop the session sweep and wipe every session key."""
        self.sessions.destroy()
