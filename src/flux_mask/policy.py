"""
Obfuscation policy: which requests get encrypted.

Rules, in order:
1. Disabled config protects nothing.
2. Any matching exclude pattern exempts the URL (exclude wins).
3. With url_patterns, at least one must match.
4. Without url_patterns, everything not excluded is protected.

Patterns are unanchored (re.search). Protocol-internal URLs are never
encrypted, whatever the configuration says.
"""

from flux_mask.config import FluxMaskConfig
from flux_mask.constants import INTERNAL_PATH_MARKER

__all__ = [
    "is_internal_url",
    "requires_encryption",
    "should_obfuscate",
]


def should_obfuscate(url: str, config: FluxMaskConfig) -> bool:
    """
    Decide from configuration alone whether *url* must be protected.

    Args:
        url: Request URL (absolute or relative)
        config: Client configuration

    Returns:
        True if the request body must be encrypted
    """
    if not config.enabled:
        return False

    if any(pattern.search(url) for pattern in config.compiled_exclude_patterns):
        return False

    if config.compiled_url_patterns:
        return any(pattern.search(url) for pattern in config.compiled_url_patterns)

    return True


def is_internal_url(url: str) -> bool:
    """Whether *url* targets a protocol-internal endpoint (key fetch / exchange)."""
    return INTERNAL_PATH_MARKER in url


def requires_encryption(url: str, config: FluxMaskConfig) -> bool:
    """Policy decision plus the internal-endpoint exemption used by integrations."""
    return not is_internal_url(url) and should_obfuscate(url, config)
