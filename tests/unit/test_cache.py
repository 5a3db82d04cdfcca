# --------------------------- tests/unit/test_cache.py ----------------------------
"""Quote Intake · TTL Cache Tests"""

import pytest

from quote_intake.services.cache import TTLCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    """Expiry against an injected clock and backing store."""

    def test_value_is_served_until_ttl(self):
        clock = FakeClock()
        cache = TTLCache(60, clock=clock)
        cache.set("query", [0.1, 0.2])

        clock.now += 59
        assert cache.get("query") == [0.1, 0.2]
        clock.now += 1
        assert cache.get("query") is None
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1

    def test_cleanup_evicts_only_expired_entries(self):
        clock = FakeClock()
        cache = TTLCache(10, clock=clock)
        cache.set("old", 1)
        clock.now += 5
        cache.set("new", 2)
        clock.now += 6

        assert cache.cleanup() == 1
        assert "new" in cache
        assert len(cache) == 1

    def test_injected_store_is_used(self):
        store = {}
        cache = TTLCache(10, store=store, clock=FakeClock())
        cache.set("k", "v", ttl_seconds=3)

        assert store["k"] == ("v", 1003.0)

    def test_non_positive_ttl_is_rejected(self):
        with pytest.raises(ValueError):
            TTLCache(0)
