# --------------------------- quote_intake/services/cache.py ----------------------------
"""
Quote Intake · TTL Cache

OVERVIEW:
Small expiring key/value cache used for embeddings and geocoding results.
The backing store and the clock are injected, so a cache can be shared
through any MutableMapping (a dict, a shelve, a Redis-backed mapping) and
tested without sleeping.

BUSINESS LOGIC:
- Embedding the same text twice costs money and latency; identical text is
  served from cache for the configured TTL (one hour by default)
- Expired entries are evicted on read and by an explicit cleanup() sweep
"""

import logging
import time
from typing import Any, Callable, Dict, Hashable, MutableMapping, Optional, Tuple

logger = logging.getLogger(__name__)


class TTLCache:
    """
    Expiring cache over an injectable backing store.

    ARGS:
        ttl_seconds: lifetime of an entry
        store: mapping that holds ``key -> (value, expires_at)`` pairs
        clock: monotonic time source in seconds
    """

    def __init__(self, ttl_seconds: float, store: Optional[MutableMapping[Hashable, Tuple[Any, float]]] = None,
                 clock: Callable[[], float] = time.monotonic, name: str = "cache"):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._store = store if store is not None else {}
        self._clock = clock
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            self.misses += 1
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._store.pop(key, None)
            self.misses += 1
            return None
        self.hits += 1
        return value

    def set(self, key: Hashable, value: Any, ttl_seconds: Optional[float] = None) -> None:
        self._store[key] = (value, self._clock() + (ttl_seconds or self.ttl_seconds))

    def delete(self, key: Hashable) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()
        logger.info(f"{self.name}: cleared")

    def cleanup(self) -> int:
        """Evict every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in list(self._store.items()) if now >= expires_at]
        for key in expired:
            self._store.pop(key, None)
        if expired:
            logger.debug(f"{self.name}: evicted {len(expired)} expired entries")
        return len(expired)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": len(self._store),
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
        }
