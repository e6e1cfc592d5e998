"""
Client-side handshake orchestration.

FluxMaskClient owns one ClientHandshakeState and drives the key exchange:

    UNINITIALIZED --initialize()--> INITIALIZING --success--> READY
                                         |
                                         +--failure--> UNINITIALIZED (retryable)

The handshake is single-flight: concurrent callers of initialize() (or of
encrypt_request() on a fresh client) all await the same in-flight task, so
one client performs exactly one public-key fetch and one key-exchange POST.
Callers await the task through asyncio.shield(); a caller that is cancelled
does not cancel the handshake for the others.

A session older than config.session_timeout is dropped before the next
encrypt_request(), which then performs a fresh handshake instead of sending
under a key the server has already expired.

The HTTP transport is pluggable through the KeyExchangeTransport protocol
(see flux_mask.middleware.aiohttp for the aiohttp implementation).

Usage:
    client = FluxMaskClient(transport, merge_config())
    envelope = await client.encrypt_request({"name": "a"})
    headers = build_encrypted_headers(client.session_id)
    ...
    data = client.decrypt_response(response_text)
"""

from __future__ import annotations

import asyncio
import enum
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from flux_mask._logging import get_logger, session_tag
from flux_mask.config import FluxMaskConfig
from flux_mask.constants import FIELD_ENCRYPTED_KEY, FIELD_SESSION_ID
from flux_mask.envelope import decrypt, encrypt
from flux_mask.exceptions import HandshakeError, NotInitializedError
from flux_mask.keys import SymmetricKey, generate_session_id, generate_symmetric_key
from flux_mask.keywrap import normalize_public_key_pem, wrap_key

__all__ = [
    "ClientHandshakeState",
    "FluxMaskClient",
    "HandshakeState",
    "KeyExchangeTransport",
    "parse_plaintext",
    "serialize_payload",
]

_logger = get_logger(__name__)


class KeyExchangeTransport(Protocol):
    """HTTP operations the handshake needs.

    Implementations mark both calls as protocol-internal (X-Flux-Mask header)
    and raise HandshakeError (or any exception, which is wrapped) on failure.
    """

    async def fetch_public_key(self, url: str) -> str:
        """GET the server public key; returns the response text."""
        ...

    async def submit_key_exchange(self, url: str, payload: dict[str, str]) -> None:
        """POST the wrapped key and session id as JSON."""
        ...


class HandshakeState(enum.Enum):
    """Lifecycle of a client's session key."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


@dataclass
class ClientHandshakeState:
    """Mutable per-client handshake state. Mutated only by FluxMaskClient."""

    public_key: str | None = None
    symmetric_key: SymmetricKey | None = None
    session_id: str | None = None
    pending_init: asyncio.Task[None] | None = None
    established_at: float | None = None

    @property
    def state(self) -> HandshakeState:
        if self.symmetric_key is not None:
            return HandshakeState.READY
        if self.pending_init is not None:
            return HandshakeState.INITIALIZING
        return HandshakeState.UNINITIALIZED


def serialize_payload(data: Any) -> bytes:
    """
    Canonical byte form of a request body before encryption.

    str and bytes-like bodies are used as-is (str as UTF-8); anything else is
    serialized as compact JSON.
    """
    if isinstance(data, str):
        return data.encode("utf-8")
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def parse_plaintext(plaintext: bytes) -> Any:
    """
    Structured value of a decrypted body.

    JSON if it parses, otherwise the decoded string, otherwise the raw bytes.
    """
    try:
        text = plaintext.decode("utf-8")
    except UnicodeDecodeError:
        return plaintext
    try:
        return json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return text


class FluxMaskClient:
    """
    Handshake orchestrator for one logical HTTP client.

    Holds its own ClientHandshakeState; nothing is shared between instances.
    """

    def __init__(
        self,
        transport: KeyExchangeTransport,
        config: FluxMaskConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize orchestrator.

        Args:
            transport: Performs the public-key GET and key-exchange POST
            config: Endpoints, policy and session lifetime configuration
            clock: Monotonic time source for session age (injectable for tests)
        """
        self._transport = transport
        self.config = config
        self._clock = clock
        self._state = ClientHandshakeState()
        self._closed = False

    @property
    def state(self) -> HandshakeState:
        """Current handshake state."""
        return self._state.state

    @property
    def is_ready(self) -> bool:
        """Whether a session key is established."""
        return self._state.symmetric_key is not None

    @property
    def session_id(self) -> str | None:
        """Session identifier to attach to protected requests (None before READY)."""
        return self._state.session_id

    @property
    def public_key(self) -> str | None:
        """Normalized server public key PEM used for the current session."""
        return self._state.public_key

    # =========================================================================
    # Handshake
    # =========================================================================

    async def initialize(self) -> None:
        """
        Ensure a session key is established, joining any in-flight handshake.

        Raises:
            HandshakeError: If the handshake failed (KeyExchangeError for wrap
                failures). The client is left UNINITIALIZED and may retry.
            NotInitializedError: If the client has been closed
        """
        if self._closed:
            raise NotInitializedError("Client is closed")
        if self._state.symmetric_key is not None:
            return

        task = self._state.pending_init
        if task is None:
            task = asyncio.ensure_future(self._handshake())
            task.add_done_callback(self._on_handshake_done)
            self._state.pending_init = task
            _logger.debug("Handshake started")
        else:
            _logger.debug("Handshake in flight, joining")

        await asyncio.shield(task)

    def _on_handshake_done(self, task: asyncio.Task[None]) -> None:
        if self._state.pending_init is task:
            self._state.pending_init = None
        # Mark the exception retrieved even if every awaiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _handshake(self) -> None:
        """Run the key exchange and commit state only when it fully succeeds."""
        config = self.config

        try:
            raw_public_key = await self._transport.fetch_public_key(config.public_key_endpoint)
        except HandshakeError:
            raise
        except Exception as e:
            raise HandshakeError(f"Failed to fetch public key: {e}") from e

        # KeyExchangeError (a HandshakeError) propagates as-is
        public_key = normalize_public_key_pem(raw_public_key)
        symmetric_key = generate_symmetric_key()
        session_id = generate_session_id()

        try:
            encrypted_key = wrap_key(symmetric_key, public_key)
            payload = {FIELD_ENCRYPTED_KEY: encrypted_key, FIELD_SESSION_ID: session_id}
            try:
                await self._transport.submit_key_exchange(config.key_exchange_endpoint, payload)
            except HandshakeError:
                raise
            except Exception as e:
                raise HandshakeError(f"Key exchange failed: {e}") from e
        except BaseException:
            symmetric_key.destroy()
            _logger.debug("Handshake failed: session=%s", session_tag(session_id))
            raise

        if self._closed:
            symmetric_key.destroy()
            raise NotInitializedError("Client closed during handshake")

        # Single commit point: no caller ever sees partial key material
        self._state.public_key = public_key
        self._state.session_id = session_id
        self._state.symmetric_key = symmetric_key
        self._state.established_at = self._clock()
        _logger.debug("Handshake complete: session=%s", session_tag(session_id))

    # =========================================================================
    # Payloads
    # =========================================================================

    async def encrypt_request(self, data: Any) -> str:
        """
        Encrypt a request body, performing the handshake first if needed.

        Args:
            data: str, bytes, or any JSON-serializable value

        Returns:
            Envelope string

        Raises:
            HandshakeError: If the implicit handshake failed
            NotInitializedError: If the client has been closed
            EncryptionError: If encryption failed
        """
        if self._session_expired():
            _logger.debug(
                "Session older than %.1fs, re-keying: session=%s",
                self.config.session_timeout,
                session_tag(self._state.session_id),
            )
            self.reset()

        if self._state.symmetric_key is None:
            await self.initialize()

        key = self._state.symmetric_key
        if key is None or self._closed:
            raise NotInitializedError("Symmetric key not initialized")

        return encrypt(serialize_payload(data), key)

    def _session_expired(self) -> bool:
        established_at = self._state.established_at
        if established_at is None:
            return False
        return self._clock() - established_at > self.config.session_timeout

    def decrypt_response(self, envelope: str | bytes) -> Any:
        """
        Decrypt a response body with the session key.

        Args:
            envelope: Envelope string from the server

        Returns:
            Parsed JSON value, or the decrypted string when it is not JSON

        Raises:
            NotInitializedError: If no session key is established
            DecryptionError: If the envelope is malformed or fails authentication
        """
        key = self._state.symmetric_key
        if key is None:
            raise NotInitializedError("Symmetric key not initialized")

        return parse_plaintext(decrypt(envelope, key))

    def reset(self) -> None:
        """
        Forget the current session so the next request performs a new handshake.

        Used after the server reports the session unknown or expired.
        """
        key = self._state.symmetric_key
        self._state.symmetric_key = None
        self._state.session_id = None
        self._state.established_at = None
        if key is not None:
            key.destroy()
            _logger.debug("Session reset")

    def close(self) -> None:
        """Wipe the session key and refuse further use."""
        self._closed = True
        self.reset()
