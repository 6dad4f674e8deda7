"""
Tests for the TTL / least-used query cache.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from backoffice.db import OrderFilter
from backoffice.salesdrive import QueryCache, make_key


class TestMakeKey:

    def test_field_order_does_not_matter(self):
        assert make_key("orders", {"a": 1, "b": 2}) == make_key("orders", {"b": 2, "a": 1})

    def test_nested_dicts_are_canonical(self):
        first = make_key("orders", {"filter": {"to": 2, "from": 1}})
        second = make_key("orders", {"filter": {"from": 1, "to": 2}})

        assert first == second

    def test_serializes_dates_and_enums(self):
        key = make_key("orders", {
            "from": datetime(2026, 1, 1, tzinfo=timezone.utc),
            "filter": OrderFilter.UPDATE_AT,
        })

        assert "2026-01-01T00:00:00+00:00" in key
        assert "updateAt" in key

    def test_method_is_part_of_key(self):
        assert make_key("a", {}) != make_key("b", {})


class TestGetPut:

    def test_get_after_put_within_ttl(self, clock):
        cache = QueryCache(clock=clock)
        cache.put("k", [1, 2, 3], ttl=60)

        clock.advance(59)

        assert cache.get("k") == [1, 2, 3]

    def test_expired_entry_is_a_miss(self, clock):
        cache = QueryCache(clock=clock)
        cache.put("k", "v", ttl=60)

        clock.advance(61)

        assert cache.get("k") is None
        assert len(cache) == 0

    def test_default_ttl_applies(self, clock):
        cache = QueryCache(default_ttl=10, clock=clock)
        cache.put("k", "v")

        clock.advance(11)

        assert cache.get("k") is None

    def test_invalidate(self, clock):
        cache = QueryCache(clock=clock)
        cache.put("a", 1)
        cache.put("b", 2)

        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert cache.get("a") is None
        assert cache.invalidate_all() == 1
        assert len(cache) == 0

    def test_overwriting_does_not_evict(self, clock):
        cache = QueryCache(max_size=2, clock=clock)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("a", 3)

        assert len(cache) == 2
        assert cache.get("a") == 3


class TestEviction:

    def test_size_stays_within_max(self, clock):
        cache = QueryCache(max_size=8, clock=clock)

        for i in range(30):
            cache.put(f"k{i}", i)
            assert len(cache) <= 8

    def test_evicts_quarter_of_entries(self, clock):
        cache = QueryCache(max_size=8, clock=clock)
        for i in range(8):
            cache.put(f"k{i}", i)

        cache.put("new", "x")

        # ceil(8 * 0.25) = 2 evicted, then one inserted
        assert len(cache) == 7

    def test_least_accessed_evicted_first(self, clock):
        cache = QueryCache(max_size=4, clock=clock)
        for key in ("a", "b", "c", "d"):
            cache.put(key, key)
            clock.advance(1)

        for key in ("a", "b", "d"):
            cache.get(key)

        cache.put("e", "e")

        assert cache.get("c") is None
        assert cache.get("a") == "a"

    def test_ties_broken_by_least_recent_access(self, clock):
        cache = QueryCache(max_size=4, clock=clock)
        for key in ("a", "b", "c", "d"):
            cache.put(key, key)
            clock.advance(1)

        cache.put("e", "e")

        assert cache.get("a") is None
        assert cache.get("b") == "b"


class TestTtlHeuristic:

    def test_large_results_live_longer(self):
        cache = QueryCache(default_ttl=100)

        assert cache.determine_ttl("collect_orders", 1001) == 200

    def test_volatile_queries_expire_sooner(self):
        cache = QueryCache(default_ttl=100)

        assert cache.determine_ttl("order_stats", 10) == 50
        assert cache.determine_ttl("sync_preview", 10) == 50

    def test_default_otherwise(self):
        cache = QueryCache(default_ttl=100)

        assert cache.determine_ttl("orders", 10) == 100


class TestSweep:

    def test_purge_expired(self, clock):
        cache = QueryCache(clock=clock)
        cache.put("short", 1, ttl=10)
        cache.put("long", 2, ttl=100)

        clock.advance(50)

        assert cache.purge_expired() == 1
        assert len(cache) == 1

    def test_info_reports_entries(self, clock):
        cache = QueryCache(max_size=5, default_ttl=60, clock=clock)
        cache.put("k", 1)
        clock.advance(10)
        cache.get("k")

        info = cache.info()

        assert info["size"] == 1
        assert info["max_size"] == 5
        assert info["entries"][0]["access_count"] == 2
        assert info["entries"][0]["age_seconds"] == 10

    @pytest.mark.asyncio
    async def test_background_sweep_purges(self, clock):
        cache = QueryCache(cleanup_interval=0.01, clock=clock)
        cache.put("k", 1, ttl=5)
        clock.advance(6)

        cache.start_cleanup()
        await asyncio.sleep(0.05)
        await cache.stop_cleanup()

        assert len(cache) == 0
