"""
Protocol constants for flux-mask.

Header names, internal endpoint paths and cryptographic sizes shared by the
client, the server engine and the middleware.
"""

# =============================================================================
# HTTP headers
# =============================================================================

HEADER_FLUX_MASK = "X-Flux-Mask"
"""Marks protocol-internal calls and encrypted payloads."""

HEADER_FLUX_MASK_SESSION = "X-Flux-Mask-Session"
"""Carries the session identifier on every protected request/response."""

FLUX_MASK_ENCRYPTED = "encrypted"
FLUX_MASK_INIT = "init"
FLUX_MASK_KEY_EXCHANGE = "key-exchange"

ENCRYPTED_CONTENT_TYPE = "text/plain"
"""Content type of an envelope on the wire (opaque text, not JSON)."""

# =============================================================================
# Endpoints
# =============================================================================

INTERNAL_PATH_MARKER = "__flux-mask"
"""Any URL containing this marker is protocol-internal and never encrypted."""

PUBLIC_KEY_PATH = f"/{INTERNAL_PATH_MARKER}/key/public"
KEY_EXCHANGE_PATH = f"/{INTERNAL_PATH_MARKER}/key"

# =============================================================================
# Key exchange payload fields
# =============================================================================

FIELD_ENCRYPTED_KEY = "encryptedKey"
FIELD_SESSION_ID = "sessionId"

# =============================================================================
# Envelope fields (wire format)
# =============================================================================

ENVELOPE_FIELD_IV = "iv"
ENVELOPE_FIELD_TAG = "authTag"
ENVELOPE_FIELD_DATA = "data"

# =============================================================================
# Sizes
# =============================================================================

SYMMETRIC_KEY_SIZE = 32  # AES-256
AES_GCM_IV_SIZE = 12  # 96-bit nonce
AES_GCM_TAG_SIZE = 16  # 128-bit tag
SESSION_ID_SIZE = 32  # 256-bit random, hex encoded on the wire
RSA_KEY_SIZE = 2048
RSA_MIN_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
PEM_LINE_LENGTH = 64

PEM_PUBLIC_KEY_HEADER = "-----BEGIN PUBLIC KEY-----"
PEM_PUBLIC_KEY_FOOTER = "-----END PUBLIC KEY-----"

# =============================================================================
# Session lifecycle (seconds)
# =============================================================================

DEFAULT_SESSION_TIMEOUT = 60 * 60.0  # 1 hour
DEFAULT_CLEANUP_INTERVAL = 5 * 60.0  # 5 minutes
