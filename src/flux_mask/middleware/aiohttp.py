"""
aiohttp client session with transparent flux-mask encryption.

Provides a drop-in wrapper around aiohttp.ClientSession that automatically:
- Performs the key exchange on the first protected request (single-flight)
- Encrypts request bodies of URLs selected by the obfuscation policy
- Decrypts responses marked with X-Flux-Mask: encrypted

Usage:
    async with FluxMaskClientSession(base_url="https://api.example.com") as session:
        response = await session.post("/api/users", json={"name": "a"})
        data = await session.read(response)  # decrypted, JSON-parsed
"""

import json as json_module
import types
from http import HTTPStatus
from typing import Any
from urllib.parse import urljoin

import aiohttp
from typing_extensions import Self

from flux_mask._logging import get_logger, session_tag
from flux_mask.client import FluxMaskClient, parse_plaintext
from flux_mask.config import FluxMaskConfig, merge_config
from flux_mask.constants import (
    ENCRYPTED_CONTENT_TYPE,
    FLUX_MASK_INIT,
    FLUX_MASK_KEY_EXCHANGE,
    HEADER_FLUX_MASK,
)
from flux_mask.exceptions import HandshakeError, NotInitializedError
from flux_mask.headers import build_encrypted_headers, is_encrypted
from flux_mask.policy import requires_encryption

__all__ = [
    "FluxMaskClientSession",
]

_logger = get_logger(__name__)


class FluxMaskClientSession:
    """
    aiohttp-compatible client session with transparent flux-mask encryption.

    Features:
    - Policy-driven request body encryption (url/exclude patterns)
    - One handshake per session instance, shared by concurrent requests
    - Response decryption via read()
    - Session reset when the server reports an unknown or expired session
    """

    def __init__(
        self,
        base_url: str = "",
        config: FluxMaskConfig | dict[str, Any] | None = None,
        **aiohttp_kwargs: Any,
    ) -> None:
        """
        Initialize flux-mask client session.

        Args:
            base_url: Base URL for relative request URLs and endpoints
            config: FluxMaskConfig or option overrides merged over the defaults
            **aiohttp_kwargs: Additional arguments passed to aiohttp.ClientSession
        """
        self.base_url = base_url.rstrip("/")
        self.config = merge_config(config)

        self._session: aiohttp.ClientSession | None = None
        self._aiohttp_kwargs = aiohttp_kwargs
        self._client = FluxMaskClient(self, self.config)

    @property
    def client(self) -> FluxMaskClient:
        """Handshake orchestrator (session id, state)."""
        return self._client

    @property
    def session_id(self) -> str | None:
        """Current flux-mask session id."""
        return self._client.session_id

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        self._session = aiohttp.ClientSession(**self._aiohttp_kwargs)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        """Async context manager exit."""
        self._client.close()
        if self._session:
            await self._session.close()
            self._session = None

    def _resolve(self, url: str) -> str:
        if url.startswith(("http://", "https://")) or not self.base_url:
            return url
        return urljoin(self.base_url + "/", url.lstrip("/"))

    def _require_session(self) -> aiohttp.ClientSession:
        if not self._session:
            raise RuntimeError("Session not initialized. Use 'async with' context manager.")
        return self._session

    # =========================================================================
    # KeyExchangeTransport
    # =========================================================================

    async def fetch_public_key(self, url: str) -> str:
        """GET the server public key (protocol-internal, never encrypted)."""
        session = self._require_session()
        url = self._resolve(url)
        try:
            async with session.get(url, headers={HEADER_FLUX_MASK: FLUX_MASK_INIT}) as resp:
                if resp.status != HTTPStatus.OK:
                    raise HandshakeError(f"Public key endpoint returned {resp.status}")
                text = await resp.text()
        except aiohttp.ClientError as e:
            _logger.debug("Public key fetch failed: url=%s error=%s", url, e)
            raise HandshakeError(f"Failed to fetch public key: {e}") from e

        _logger.debug("Public key fetched: url=%s size=%d", url, len(text))
        return text

    async def submit_key_exchange(self, url: str, payload: dict[str, str]) -> None:
        """POST the wrapped session key (protocol-internal, never encrypted)."""
        session = self._require_session()
        url = self._resolve(url)
        try:
            async with session.post(
                url,
                json=payload,
                headers={HEADER_FLUX_MASK: FLUX_MASK_KEY_EXCHANGE},
            ) as resp:
                if resp.status >= HTTPStatus.BAD_REQUEST:
                    raise HandshakeError(f"Key exchange endpoint returned {resp.status}")
        except aiohttp.ClientError as e:
            _logger.debug("Key exchange failed: url=%s error=%s", url, e)
            raise HandshakeError(f"Key exchange request failed: {e}") from e

    # =========================================================================
    # Requests
    # =========================================================================

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        data: Any = None,
        **kwargs: Any,
    ) -> aiohttp.ClientResponse:
        """
        Make an HTTP request, encrypting the body when the policy says so.

        Args:
            method: HTTP method
            url: URL (relative to base_url or absolute)
            json: JSON body (serialized, then encrypted)
            data: str/bytes body (encrypted as-is)
            **kwargs: Additional arguments passed to aiohttp

        Returns:
            aiohttp.ClientResponse (pass it to read() for the decrypted body)

        Raises:
            HandshakeError: If the implicit handshake failed; nothing is sent
            EncryptionError: If encryption failed; nothing is sent
        """
        session = self._require_session()
        url = self._resolve(url)

        body: Any = None
        if json is not None:
            body = json
        elif data is not None:
            body = data

        headers = dict(kwargs.pop("headers", None) or {})
        protected = body is not None and requires_encryption(url, self.config)

        if protected:
            # Errors propagate: a request is never sent in plaintext under the encrypted label
            envelope = await self._client.encrypt_request(body)
            session_id = self._client.session_id
            if session_id is None:
                raise NotInitializedError("Session id missing after handshake")
            headers.update(build_encrypted_headers(session_id))
            headers["Content-Type"] = ENCRYPTED_CONTENT_TYPE
            kwargs["data"] = envelope
            _logger.debug("Request encrypted: method=%s url=%s session=%s", method, url, session_tag(session_id))
        elif json is not None:
            kwargs["json"] = json
        elif data is not None:
            kwargs["data"] = data

        kwargs["headers"] = headers
        response = await session.request(method, url, **kwargs)

        if protected and response.status == HTTPStatus.UNAUTHORIZED:
            # Server no longer knows the session; next protected request re-handshakes
            _logger.debug("Session rejected by server: url=%s", url)
            self._client.reset()

        return response

    async def read(self, response: aiohttp.ClientResponse) -> Any:
        """
        Read a response body, decrypting it when marked encrypted.

        Args:
            response: Response from request() or a convenience method

        Returns:
            JSON value if the body parses as JSON, otherwise str (or bytes)

        Raises:
            NotInitializedError: If the response is encrypted but no session exists
            DecryptionError: If the encrypted body cannot be opened
        """
        raw = await response.read()
        if is_encrypted(response.headers):
            _logger.debug("Response decrypting: url=%s size=%d", response.url, len(raw))
            return self._client.decrypt_response(raw)
        return parse_plaintext(raw)

    async def read_json(self, response: aiohttp.ClientResponse) -> Any:
        """read() but require a JSON body."""
        value = await self.read(response)
        if isinstance(value, (str, bytes)):
            return json_module.loads(value)
        return value

    # Convenience methods
    async def get(self, url: str, **kwargs: Any) -> aiohttp.ClientResponse:
        """GET request."""
        return await self.request("GET", url, **kwargs)

    async def post(
        self,
        url: str,
        *,
        json: Any = None,
        data: Any = None,
        **kwargs: Any,
    ) -> aiohttp.ClientResponse:
        """POST request."""
        return await self.request("POST", url, json=json, data=data, **kwargs)

    async def put(
        self,
        url: str,
        *,
        json: Any = None,
        data: Any = None,
        **kwargs: Any,
    ) -> aiohttp.ClientResponse:
        """PUT request."""
        return await self.request("PUT", url, json=json, data=data, **kwargs)

    async def patch(
        self,
        url: str,
        *,
        json: Any = None,
        data: Any = None,
        **kwargs: Any,
    ) -> aiohttp.ClientResponse:
        """PATCH request."""
        return await self.request("PATCH", url, json=json, data=data, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> aiohttp.ClientResponse:
        """DELETE request."""
        return await self.request("DELETE", url, **kwargs)
