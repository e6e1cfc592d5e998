"""
Server-side session store for symmetric keys.

One SymmetricKey per session id, each with an expiry. Expired records are
removed two ways:
- lazily, by the get() that finds them expired
- periodically, by a daemon sweep thread (default every 5 minutes)

Both paths are idempotent, so they never race into an error. A single lock
guards the record map; request handlers on any thread or event loop may use
the store concurrently.

Eviction and replacement only drop the store's reference: a handler that
looked a key up keeps a working key until it is done with it. Keys are wiped
only by explicit teardown (delete, clear, destroy).

Usage:
    store = SessionStore(session_timeout=3600)
    store.put(session_id, key)
    key = store.get(session_id)  # None once expired
    store.destroy()  # before shutdown: stops the sweep, wipes all keys
"""

from __future__ import annotations

import threading
import time
import types
from collections.abc import Callable
from dataclasses import dataclass

from typing_extensions import Self

from flux_mask._logging import get_logger, session_tag
from flux_mask.constants import DEFAULT_CLEANUP_INTERVAL, DEFAULT_SESSION_TIMEOUT
from flux_mask.keys import SymmetricKey

__all__ = [
    "SessionRecord",
    "SessionStore",
]

_logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionRecord:
    """A live binding between a session id and its key."""

    session_id: str
    symmetric_key: SymmetricKey
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """Expired strictly after expires_at."""
        return now > self.expires_at


class SessionStore:
    """
    Thread-safe map of session id to SymmetricKey with expiry.

    Records are replaced, never edited: put() on an existing id installs a new
    record (last writer wins). The previous key is left intact for any holder.
    """

    def __init__(
        self,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT,
        *,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        start_cleanup: bool = True,
    ) -> None:
        """
        Initialize the store.

        Args:
            session_timeout: Record lifetime in seconds
            cleanup_interval: Seconds between background sweeps
            clock: Monotonic time source (injectable for tests)
            start_cleanup: Start the background sweep thread immediately
        """
        if session_timeout <= 0:
            raise ValueError("session_timeout must be positive")
        if cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be positive")

        self.session_timeout = session_timeout
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._records: dict[str, SessionRecord] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

        if start_cleanup:
            self.start_cleanup()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.destroy()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and self.get(session_id) is not None

    # =========================================================================
    # Records
    # =========================================================================

    def put(self, session_id: str, symmetric_key: SymmetricKey) -> SessionRecord:
        """
        Insert or replace the record for *session_id*.

        Returns:
            The new record (expires session_timeout seconds from now)
        """
        now = self._clock()
        record = SessionRecord(
            session_id=session_id,
            symmetric_key=symmetric_key,
            created_at=now,
            expires_at=now + self.session_timeout,
        )
        with self._lock:
            previous = self._records.get(session_id)
            self._records[session_id] = record

        if previous is not None and previous.symmetric_key is not symmetric_key:
            _logger.debug("Session key replaced: session=%s", session_tag(session_id))
        else:
            _logger.debug("Session stored: session=%s ttl=%.1fs", session_tag(session_id), self.session_timeout)
        return record

    def get_record(self, session_id: str) -> SessionRecord | None:
        """Live record for *session_id*, evicting it if expired."""
        now = self._clock()
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            if record.is_expired(now):
                del self._records[session_id]
            else:
                return record

        _logger.debug("Session expired on lookup: session=%s", session_tag(session_id))
        return None

    def get(self, session_id: str) -> SymmetricKey | None:
        """
        Key for *session_id*.

        Returns:
            The key, or None if unknown or expired (expired records are evicted)
        """
        record = self.get_record(session_id)
        return record.symmetric_key if record is not None else None

    def delete(self, session_id: str) -> None:
        """Remove a session. Unknown ids are ignored."""
        with self._lock:
            record = self._records.pop(session_id, None)
        if record is not None:
            record.symmetric_key.destroy()
            _logger.debug("Session deleted: session=%s", session_tag(session_id))

    def clear(self) -> None:
        """Remove every session."""
        with self._lock:
            records = list(self._records.values())
            self._records.clear()
        for record in records:
            record.symmetric_key.destroy()
        if records:
            _logger.debug("Sessions cleared: count=%d", len(records))

    def sweep(self) -> int:
        """
        Evict every expired record.

        Returns:
            Number of records evicted
        """
        now = self._clock()
        with self._lock:
            expired = [sid for sid, record in self._records.items() if record.is_expired(now)]
            evicted = [self._records.pop(sid) for sid in expired]
        if evicted:
            _logger.debug("Session sweep: evicted=%d", len(evicted))
        return len(evicted)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def cleanup_running(self) -> bool:
        """Whether the background sweep thread is alive."""
        return self._sweeper is not None and self._sweeper.is_alive()

    def start_cleanup(self) -> None:
        """Start the background sweep thread (no-op if already running)."""
        if self.cleanup_running:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._run_cleanup, name="flux-mask-session-sweep", daemon=True)
        self._sweeper.start()

    def _run_cleanup(self) -> None:
        while not self._stop.wait(self.cleanup_interval):
            self.sweep()

    def destroy(self) -> None:
        """Stop the background sweep and wipe all records."""
        self._stop.set()
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join()
        self.clear()
