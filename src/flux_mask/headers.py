"""
Header and transport encoding utilities.

The protocol uses standard base64 (RFC 4648 §4) for every binary value it
puts on the wire, matching the envelope format consumed by existing peers.
"""

import base64
import binascii
from collections.abc import Mapping
from typing import Any

from flux_mask.constants import FLUX_MASK_ENCRYPTED, HEADER_FLUX_MASK, HEADER_FLUX_MASK_SESSION

__all__ = [
    "HEADER_FLUX_MASK",
    "HEADER_FLUX_MASK_SESSION",
    "b64_decode",
    "b64_encode",
    "build_encrypted_headers",
    "get_header",
    "is_encrypted",
]


def b64_encode(data: bytes) -> str:
    """
    Encode bytes to a standard base64 string (with padding).

    Args:
        data: Raw bytes to encode

    Returns:
        base64 encoded ASCII string
    """
    return base64.b64encode(data).decode("ascii")


def b64_decode(s: str | bytes) -> bytes:
    """
    Decode a standard base64 string strictly.

    Args:
        s: base64 encoded string

    Returns:
        Decoded bytes

    Raises:
        ValueError: If the input is not valid base64
    """
    try:
        return base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64: {e}") from e


def get_header(headers: Mapping[str, Any], name: str) -> str | None:
    """Get header value, handling case-insensitive lookups."""
    # Try exact match first (faster)
    if name in headers:
        return str(headers[name])
    # Fall back to case-insensitive search
    name_lower = name.lower()
    for key in headers:
        if str(key).lower() == name_lower:
            return str(headers[key])
    return None


def is_encrypted(headers: Mapping[str, Any]) -> bool:
    """Whether the headers mark the body as a flux-mask envelope."""
    value = get_header(headers, HEADER_FLUX_MASK)
    return value is not None and value.strip().lower() == FLUX_MASK_ENCRYPTED


def build_encrypted_headers(session_id: str) -> dict[str, str]:
    """Headers attached to every protected request and response."""
    return {
        HEADER_FLUX_MASK: FLUX_MASK_ENCRYPTED,
        HEADER_FLUX_MASK_SESSION: session_id,
    }
