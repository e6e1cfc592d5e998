"""
Configuration for flux-mask clients.

FluxMaskConfig is immutable. Build one from DEFAULT_CONFIG plus caller
overrides with merge_config(); caller values win field by field.

Usage:
    config = merge_config(url_patterns=[r"/api/"], exclude_patterns=[r"/api/public/"])
    config = merge_config({"session_timeout": 600})
"""

import dataclasses
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from flux_mask.constants import DEFAULT_SESSION_TIMEOUT, KEY_EXCHANGE_PATH, PUBLIC_KEY_PATH
from flux_mask.exceptions import ConfigError

__all__ = [
    "DEFAULT_CONFIG",
    "FluxMaskConfig",
    "merge_config",
]


def _compile(patterns: Iterable[str], option: str) -> tuple[re.Pattern[str], ...]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise ConfigError(f"Invalid regex in {option}: {pattern!r} ({e})") from e
    return tuple(compiled)


@dataclass(frozen=True)
class FluxMaskConfig:
    """Client-side protocol configuration."""

    enabled: bool = True
    """Master switch; when False nothing is encrypted."""

    url_patterns: tuple[str, ...] = (".*",)
    """Regexes (unanchored) selecting URLs to protect. Empty means all."""

    exclude_patterns: tuple[str, ...] = ()
    """Regexes (unanchored) exempting URLs. Exclusion wins over inclusion."""

    public_key_endpoint: str = PUBLIC_KEY_PATH
    """Where the server's public key is fetched from."""

    key_exchange_endpoint: str = KEY_EXCHANGE_PATH
    """Where the wrapped session key is posted."""

    session_timeout: float = DEFAULT_SESSION_TIMEOUT
    """Session lifetime in seconds; older sessions are re-keyed before the next request."""

    _compiled: dict[str, tuple[re.Pattern[str], ...]] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        if isinstance(self.url_patterns, str) or isinstance(self.exclude_patterns, str):
            raise ConfigError("url_patterns and exclude_patterns must be sequences of regex strings")
        # Lists are accepted; store tuples
        object.__setattr__(self, "url_patterns", tuple(self.url_patterns))
        object.__setattr__(self, "exclude_patterns", tuple(self.exclude_patterns))

        if not isinstance(self.session_timeout, (int, float)) or self.session_timeout <= 0:
            raise ConfigError(f"session_timeout must be a positive number of seconds, got {self.session_timeout!r}")
        if not self.public_key_endpoint or not self.key_exchange_endpoint:
            raise ConfigError("public_key_endpoint and key_exchange_endpoint must be non-empty")

        # Compile eagerly so a bad pattern fails at construction, not on first request
        self._compiled["url_patterns"] = _compile(self.url_patterns, "url_patterns")
        self._compiled["exclude_patterns"] = _compile(self.exclude_patterns, "exclude_patterns")

    @property
    def compiled_url_patterns(self) -> tuple[re.Pattern[str], ...]:
        """Compiled url_patterns, in list order."""
        return self._compiled["url_patterns"]

    @property
    def compiled_exclude_patterns(self) -> tuple[re.Pattern[str], ...]:
        """Compiled exclude_patterns, in list order."""
        return self._compiled["exclude_patterns"]


DEFAULT_CONFIG = FluxMaskConfig()

_FIELD_NAMES = frozenset(f.name for f in dataclasses.fields(FluxMaskConfig) if f.init)


def merge_config(
    overrides: Mapping[str, Any] | FluxMaskConfig | None = None,
    **kwargs: Any,
) -> FluxMaskConfig:
    """
    Merge caller options over DEFAULT_CONFIG.

    Args:
        overrides: Mapping of option names to values, or a complete config
        **kwargs: Individual options (applied after *overrides*)

    Returns:
        New FluxMaskConfig

    Raises:
        ConfigError: On unknown option names or invalid values

    Options whose value is None are treated as not given.
    """
    if isinstance(overrides, FluxMaskConfig):
        base = overrides
        options: dict[str, Any] = {}
    else:
        base = DEFAULT_CONFIG
        options = dict(overrides or {})
    options.update(kwargs)

    unknown = set(options) - _FIELD_NAMES
    if unknown:
        raise ConfigError(f"Unknown flux-mask option(s): {', '.join(sorted(unknown))}")

    changes = {name: value for name, value in options.items() if value is not None}
    if not changes:
        return base
    return dataclasses.replace(base, **changes)
