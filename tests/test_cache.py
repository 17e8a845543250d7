"""Tests for the TTL + LRU cache."""

from __future__ import annotations

import pytest

from booking_agent.services.cache import TTLCache


class _Ticker:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestTTLCacheBasics:
    def test_put_and_get(self):
        cache = TTLCache()
        cache.put("types", [{"id": "100"}])
        assert cache.get("types") == [{"id": "100"}]

    def test_get_returns_none_for_missing_key(self):
        assert TTLCache().get("nonexistent") is None

    def test_put_overwrites_existing_key(self):
        cache = TTLCache()
        cache.put("key1", "old")
        cache.put("key1", "new")
        assert cache.get("key1") == "new"
        assert cache.entry_count == 1

    def test_invalidate(self):
        cache = TTLCache()
        cache.put("key1", "value")
        assert cache.invalidate("key1") is True
        assert cache.invalidate("key1") is False
        assert cache.get("key1") is None

    def test_invalidate_prefix(self):
        cache = TTLCache()
        cache.put("appointment_types:a:1", 1)
        cache.put("appointment_types:b:2", 2)
        cache.put("other", 3)
        assert cache.invalidate_prefix("appointment_types:") == 2
        assert cache.get("other") == 3

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            TTLCache(max_entries=0)


class TestTTLExpiry:
    def test_entry_expires_after_ttl(self):
        ticker = _Ticker()
        cache = TTLCache(ttl_seconds=60, clock=ticker)
        cache.put("types", ["cleaning"])

        ticker.now = 59.9
        assert cache.get("types") == ["cleaning"]
        ticker.now = 60.0
        assert cache.get("types") is None
        assert cache.entry_count == 0

    def test_overwrite_resets_ttl(self):
        ticker = _Ticker()
        cache = TTLCache(ttl_seconds=10, clock=ticker)
        cache.put("k", 1)
        ticker.now = 8
        cache.put("k", 2)
        ticker.now = 15
        assert cache.get("k") == 2


class TestLRUEviction:
    def test_evicts_least_recently_used(self):
        cache = TTLCache(max_entries=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")  # a becomes most recently used
        cache.put("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3
