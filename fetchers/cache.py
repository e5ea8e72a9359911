"""In-process TTL cache for GitHub API responses."""

import logging
import threading
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# TTLs in seconds by resource kind
REPOSITORY_TTL = 30 * 60
USER_TTL = 60 * 60
PULL_REQUEST_TTL = 5 * 60
RATE_LIMIT_TTL = 60
COMMIT_TTL = 60 * 60  # commit contents never change


def cache_key(prefix: str, *parts: Any) -> str:
    """Build a cache key like ``repo:facebook/react``.

    Keys share a prefix per resource kind so a whole family can be dropped
    with ``ResponseCache.invalidate_prefix``.
    """
    return ":".join([prefix, *(str(p) for p in parts)])


class ResponseCache:
    """Thread-safe key/value store where each entry carries its own expiry.

    Expired entries are evicted lazily on read and by ``purge_expired``.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss or expired entry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                logger.debug(f"Cache expired: {key}")
                return None

            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def invalidate(self, key: str) -> bool:
        """Drop a single key. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with ``prefix``. Returns the count removed."""
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries with prefix '{prefix}'")
        return len(doomed)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
