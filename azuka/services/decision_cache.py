"""Short-lived in-process cache shared by every consumer of a Decision."""
from __future__ import annotations

import copy
import logging
import threading
import time
from datetime import timedelta
from typing import Any, Callable, NamedTuple, TypedDict


logger = logging.getLogger(__name__)

DECISION = "decision"
DASHBOARD = "dashboard"
NUTRITION_ENVELOPE = "nutrition_envelope"
FORECAST = "forecast"


class CacheKey(NamedTuple):
    purpose: str
    user_id: str
    date_key: str


class CacheEntry(TypedDict):
    """Cache entry with expiration metadata."""
    value: Any
    expires_at: float


class DecisionCache:
    """
    TTL cache keyed by ``(purpose, user_id, date_key)``.

    Values are deep-copied on the way in and out, so callers can never mutate
    a cached Decision and every read inside one TTL window returns an equal
    value. Thread-safe; the size limit evicts the oldest entry first.
    """

    _CLEANUP_EVERY = 10

    def __init__(
        self,
        default_ttl: timedelta = timedelta(hours=24),
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Any | None:
        """Return a copy of the cached value, or None when missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            if self._clock() >= entry["expires_at"]:
                del self._entries[key]
                logger.debug("Cache entry expired for %s/%s/%s", key.purpose, key.user_id, key.date_key)
                return None

            return copy.deepcopy(entry["value"])

    def set(self, key: CacheKey, value: Any, ttl: timedelta | None = None) -> None:
        """Store a copy of ``value`` for ``ttl`` (default TTL when omitted)."""
        if ttl is None:
            ttl = self.default_ttl
        should_cleanup = False
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                oldest_key = next(iter(self._entries))
                del self._entries[oldest_key]
                logger.debug("Cache full - evicted oldest entry %s", oldest_key)

            self._entries[key] = {
                "value": copy.deepcopy(value),
                "expires_at": self._clock() + ttl.total_seconds(),
            }
            logger.debug(
                "Cached %s for %s on %s, expires in %d s",
                key.purpose,
                key.user_id,
                key.date_key,
                ttl.total_seconds(),
            )
            should_cleanup = len(self._entries) % self._CLEANUP_EVERY == 0

        if should_cleanup:
            self.cleanup_expired()

    def invalidate(self, key: CacheKey) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_user(self, user_id: str) -> int:
        """Drop every entry for ``user_id``; returns the number removed."""
        with self._lock:
            stale = [key for key in self._entries if key.user_id == user_id]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.info("Invalidated %d cache entries for %s", len(stale), user_id)
        return len(stale)

    def cleanup_expired(self) -> None:
        """Remove all expired cache entries. Thread-safe."""
        now = self._clock()
        with self._lock:
            expired_keys = [key for key, entry in self._entries.items() if now >= entry["expires_at"]]
            for key in expired_keys:
                del self._entries[key]
        if expired_keys:
            logger.debug("Cleaned up %d expired cache entries", len(expired_keys))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
