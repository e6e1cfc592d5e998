"""
Logging helpers for flux_mask.

All loggers live under the ``flux_mask`` namespace. The package logger gets a
NullHandler so importing the library never configures logging for the host
application.

Never pass key material, plaintext or envelopes to a logger. Session ids are
logged through :func:`session_tag` only.
"""

import hashlib
import logging

_PACKAGE_LOGGER = "flux_mask"
_SESSION_TAG_SIZE = 8

logging.getLogger(_PACKAGE_LOGGER).addHandler(logging.NullHandler())


def get_logger(name: str) -> logging.Logger:
    """Return a logger for a flux_mask module (pass ``__name__``)."""
    return logging.getLogger(name)


def session_tag(session_id: str | None) -> str:
    """Short, non-reversible tag identifying a session in log lines."""
    if not session_id:
        return "-"
    return hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:_SESSION_TAG_SIZE]
