"""
FastAPI/Starlette ASGI middleware for transparent flux-mask encryption.

Provides:
- Public key endpoint (GET /__flux-mask/key/public)
- Key exchange endpoint (POST /__flux-mask/key)
- Automatic request body decryption for X-Flux-Mask: encrypted requests
- Automatic response encryption for those same requests

The application sees plaintext bodies only; it never handles keys.

Usage:
    from flux_mask.middleware.fastapi import FluxMaskMiddleware

    app = FastAPI()
    app.add_middleware(FluxMaskMiddleware, key_pair=load_key_pair(), session_timeout=3600)

    @app.post("/api/users")
    async def create_user(request: Request):
        data = await request.json()  # Decrypted by middleware
        return {"id": 1, **data}  # Encrypted by middleware
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any

from flux_mask._logging import get_logger, session_tag
from flux_mask.constants import (
    DEFAULT_CLEANUP_INTERVAL,
    DEFAULT_SESSION_TIMEOUT,
    ENCRYPTED_CONTENT_TYPE,
    FLUX_MASK_ENCRYPTED,
    HEADER_FLUX_MASK,
    HEADER_FLUX_MASK_SESSION,
    KEY_EXCHANGE_PATH,
    PUBLIC_KEY_PATH,
)
from flux_mask.core import FluxMaskServer
from flux_mask.exceptions import DecryptionError, FluxMaskError, KeyExchangeError, SessionNotFoundError
from flux_mask.keys import KeyPair
from flux_mask.session import SessionStore

__all__ = [
    "FluxMaskMiddleware",
]

_logger = get_logger(__name__)

Scope = dict[str, Any]
Message = dict[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]

_HEADER_FLUX_MASK_RAW = HEADER_FLUX_MASK.lower().encode()
_HEADER_SESSION_RAW = HEADER_FLUX_MASK_SESSION.lower().encode()
_HOP_HEADERS = (b"content-length", b"content-type", _HEADER_FLUX_MASK_RAW, _HEADER_SESSION_RAW)


@dataclass
class ResponseEncryptionState:
    """Per-request state for response encryption."""

    start_message: Message | None = None
    """Deferred http.response.start (headers change once the body is sealed)."""

    body: bytearray = field(default_factory=bytearray)
    """Buffered plaintext response body."""


class FluxMaskMiddleware:
    """
    Pure ASGI middleware terminating flux-mask encryption.

    Features:
    - Serves the public key and accepts wrapped session keys
    - Decrypts protected request bodies (X-Flux-Mask: encrypted + session header)
    - Encrypts the full response of every protected request with the same session key
    - Passes unprotected requests and non-HTTP scopes through untouched
    - Closes the server (sweep stopped, keys wiped) on lifespan.shutdown

    Error mapping (no internal details exposed):
    - malformed key exchange: 400
    - unknown or expired session: 401
    - undecryptable request body: 400
    """

    def __init__(
        self,
        app: Any,
        key_pair: KeyPair | None = None,
        *,
        server: FluxMaskServer | None = None,
        session_store: SessionStore | None = None,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        public_key_path: str = PUBLIC_KEY_PATH,
        key_exchange_path: str = KEY_EXCHANGE_PATH,
        strip_public_key: bool = False,
    ) -> None:
        """
        Initialize flux-mask middleware.

        Args:
            app: ASGI application
            key_pair: RSA identity (generated when neither it nor server is given)
            server: Pre-built FluxMaskServer (takes precedence over the options below)
            session_store: Store for session keys
            session_timeout: Session lifetime in seconds
            cleanup_interval: Seconds between background session sweeps
            public_key_path: Path of the public key endpoint
            key_exchange_path: Path of the key exchange endpoint
            strip_public_key: Serve the public key without PEM delimiters
        """
        self.app = app
        self.server = server or FluxMaskServer(
            key_pair,
            session_store=session_store,
            session_timeout=session_timeout,
            cleanup_interval=cleanup_interval,
        )
        self.public_key_path = public_key_path
        self.key_exchange_path = key_exchange_path
        self.strip_public_key = strip_public_key

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI interface."""
        if scope["type"] == "lifespan":
            await self.app(scope, self._create_lifespan_receive(receive), send)
            return

        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "")

        if path == self.public_key_path and method == "GET":
            _logger.debug("Public key requested: path=%s", path)
            await self._send_response(
                send,
                HTTPStatus.OK,
                self.server.public_key_pem(strip=self.strip_public_key).encode("ascii"),
                content_type=b"text/plain; charset=utf-8",
                extra_headers=[(b"cache-control", b"no-store")],
            )
            return

        if path == self.key_exchange_path and method == "POST":
            await self._handle_key_exchange(receive, send)
            return

        headers = dict(scope.get("headers", []))
        marker = headers.get(_HEADER_FLUX_MASK_RAW, b"").strip().lower()
        if marker != FLUX_MASK_ENCRYPTED.encode():
            # Not encrypted, pass through
            await self.app(scope, receive, send)
            return

        session_id = headers.get(_HEADER_SESSION_RAW, b"").decode("latin-1").strip()
        _logger.debug("Encrypted request received: method=%s path=%s session=%s", method, path, session_tag(session_id))

        try:
            envelope = await self._read_body(receive)
            plaintext = self.server.decrypt_request(session_id, envelope)
        except SessionNotFoundError:
            await self._send_error(send, HTTPStatus.UNAUTHORIZED, "Unknown or expired session")
            return
        except DecryptionError as e:
            # Don't expose internal error details to clients
            _logger.debug("Decryption failed: method=%s path=%s error_type=%s", method, path, type(e).__name__)
            await self._send_error(send, HTTPStatus.BAD_REQUEST, "Request decryption failed")
            return

        await self.app(
            self._plaintext_scope(scope, plaintext),
            self._create_decrypted_receive(receive, plaintext),
            self._create_encrypting_send(send, session_id, path),
        )

    def _create_lifespan_receive(self, receive: Receive) -> Receive:
        """Create a receive wrapper that closes the server on lifespan.shutdown."""

        async def lifespan_receive() -> Message:
            message = await receive()
            if message["type"] == "lifespan.shutdown":
                _logger.debug("Lifespan shutdown: wiping session keys")
                self.server.close()
            return message

        return lifespan_receive

    # =========================================================================
    # Internal endpoints
    # =========================================================================

    async def _handle_key_exchange(self, receive: Receive, send: Send) -> None:
        """Handle POST to the key exchange endpoint."""
        try:
            raw = await self._read_body(receive)
            payload = json.loads(raw)
            self.server.exchange_key(payload)
        except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
            _logger.debug("Key exchange rejected: error=%s", e)
            await self._send_error(send, HTTPStatus.BAD_REQUEST, "Key exchange body must be JSON")
            return
        except KeyExchangeError as e:
            _logger.debug("Key exchange rejected: error=%s", e)
            await self._send_error(send, HTTPStatus.BAD_REQUEST, "Key exchange failed")
            return
        except DecryptionError:
            # Client went away mid-body; nobody to answer
            _logger.debug("Key exchange aborted: client disconnected")
            return

        body = json.dumps({"status": "ok"}).encode()
        await self._send_response(send, HTTPStatus.OK, body)

    # =========================================================================
    # Request side
    # =========================================================================

    async def _read_body(self, receive: Receive) -> bytes:
        """Read the complete request body."""
        body = bytearray()
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                raise DecryptionError("Client disconnected during request")
            body.extend(message.get("body", b""))
            if not message.get("more_body", False):
                return bytes(body)

    def _plaintext_scope(self, scope: Scope, plaintext: bytes) -> Scope:
        """Scope as the app should see it: plaintext content type and length."""
        try:
            json.loads(plaintext)
            content_type = b"application/json"
        except (json.JSONDecodeError, UnicodeDecodeError, RecursionError):
            content_type = b"text/plain; charset=utf-8"

        headers = [(n, v) for n, v in scope.get("headers", []) if n.lower() not in (b"content-length", b"content-type")]
        headers.append((b"content-type", content_type))
        headers.append((b"content-length", str(len(plaintext)).encode()))
        return {**scope, "headers": headers}

    def _create_decrypted_receive(self, receive: Receive, plaintext: bytes) -> Receive:
        """Create a receive wrapper that replays the decrypted body once."""
        body_returned = False

        async def decrypted_receive() -> Message:
            nonlocal body_returned
            if not body_returned:
                body_returned = True
                return {"type": "http.request", "body": plaintext, "more_body": False}
            # Subsequent calls: wait for disconnect
            return await receive()

        return decrypted_receive

    # =========================================================================
    # Response side
    # =========================================================================

    def _create_encrypting_send(self, send: Send, session_id: str, path: str) -> Send:
        """Create send wrapper that buffers the response and seals it whole."""
        state = ResponseEncryptionState()

        async def encrypting_send(message: Message) -> None:
            msg_type = message["type"]

            if msg_type == "http.response.start":
                state.start_message = message
                return

            if msg_type != "http.response.body":
                await send(message)
                return

            state.body.extend(message.get("body", b""))
            if message.get("more_body", False):
                return

            start = state.start_message
            if start is None:
                raise FluxMaskError("Response body sent before response start")

            # EncryptionError/SessionNotFoundError propagate: never send plaintext marked encrypted
            envelope = self.server.encrypt_response(session_id, bytes(state.body)).encode("ascii")
            state.body.clear()

            headers = [(n, v) for n, v in start.get("headers", []) if n.lower() not in _HOP_HEADERS]
            headers.extend(
                [
                    (b"content-type", ENCRYPTED_CONTENT_TYPE.encode()),
                    (b"content-length", str(len(envelope)).encode()),
                    (_HEADER_FLUX_MASK_RAW, FLUX_MASK_ENCRYPTED.encode()),
                    (_HEADER_SESSION_RAW, session_id.encode("latin-1")),
                ]
            )
            _logger.debug("Response encrypted: path=%s size=%d", path, len(envelope))
            await send({**start, "headers": headers})
            await send({"type": "http.response.body", "body": envelope, "more_body": False})

        return encrypting_send

    async def _send_response(
        self,
        send: Send,
        status: int,
        body: bytes,
        *,
        content_type: bytes = b"application/json",
        extra_headers: list[tuple[bytes, bytes]] | None = None,
    ) -> None:
        """Send a complete plaintext response."""
        headers = [
            (b"content-type", content_type),
            (b"content-length", str(len(body)).encode()),
            *(extra_headers or []),
        ]
        await send({"type": "http.response.start", "status": int(status), "headers": headers})
        await send({"type": "http.response.body", "body": body, "more_body": False})

    async def _send_error(self, send: Send, status: int, message: str) -> None:
        """Send an error response."""
        body = json.dumps({"error": message}).encode()
        await self._send_response(send, status, body)

    def close(self) -> None:
        """Stop the session sweep and wipe all session keys."""
        self.server.close()
