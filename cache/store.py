"""
cache/store.py -- Process-local TTL key/value store for pending verifications.

Binds a "subject|purpose" key to the signature of the most recently issued
envelope so a later completion call can find it without the client carrying
it around. Everything lives in memory: a restart simply forgets pending
challenges, and the user requests a new code.

Usage:
    state = EphemeralStore()
    state.set_item("user-1|verify-email", info.signature, ttl=600)
    signature = state.pop_item("user-1|verify-email")   # value once, then None
    state.close()                                        # stop the sweeper

Expiry is checked on every read, so the background sweeper is compaction
only. The sweeper is a daemon thread bound to the store: close() (or leaving
a `with` block) stops it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, Union

logger = logging.getLogger("konabra.cache")

_DEFAULT_SWEEP_INTERVAL = 60.0  # seconds


@dataclass
class _Item:
    value: Any
    expires_at: Optional[float]  # monotonic seconds; None = never

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


class EphemeralStore:
    def __init__(
        self,
        sweep_interval: float = _DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        start_sweeper: bool = True,
    ) -> None:
        self._items: dict[str, _Item] = {}
        # Python has no reader/writer lock in the stdlib; every operation
        # here is a dict lookup, so one mutex is enough.
        self._lock = threading.Lock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._stopped = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        if start_sweeper:
            self._sweeper = threading.Thread(target=self._sweep_loop, name="ephemeral-store-sweeper", daemon=True)
            self._sweeper.start()

    def set_item(self, key: str, value: Any, ttl: Optional[Union[float, timedelta]] = None) -> None:
        """Store value under key, replacing any existing entry.

        ttl is seconds or a timedelta; None or a non-positive ttl means the
        item never expires.
        """
        if isinstance(ttl, timedelta):
            ttl = ttl.total_seconds()
        expires_at = self._clock() + ttl if ttl is not None and ttl > 0 else None
        with self._lock:
            self._items[key] = _Item(value=value, expires_at=expires_at)

    def peek_item(self, key: str) -> Any:
        """Return the value for key without removing it, or None if absent or expired."""
        with self._lock:
            item = self._items.get(key)
            if item is None or item.expired(self._clock()):
                return None
            return item.value

    def pop_item(self, key: str) -> Any:
        """Return the value for key and remove it. A second call returns None."""
        with self._lock:
            item = self._items.pop(key, None)
        if item is None or item.expired(self._clock()):
            return None
        return item.value

    def has_key(self, key: str) -> bool:
        with self._lock:
            item = self._items.get(key)
            return item is not None and not item.expired(self._clock())

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def purge_expired(self) -> int:
        """Delete every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            stale = [key for key, item in self._items.items() if item.expired(now)]
            for key in stale:
                del self._items[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop the background sweeper. Idempotent; the data stays readable."""
        self._stopped.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=self._sweep_interval)
            self._sweeper = None

    def __enter__(self) -> EphemeralStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _sweep_loop(self) -> None:
        # Event.wait doubles as an interruptible sleep: close() wakes it at once.
        while not self._stopped.wait(self._sweep_interval):
            try:
                removed = self.purge_expired()
            except Exception:
                logger.exception("Ephemeral store sweep failed")
                continue
            if removed:
                logger.debug("Ephemeral store sweep removed %d expired item(s)", removed)
