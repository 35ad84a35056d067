"""
Unit tests for the cache package: TTL freshness and request coalescing.
"""
import asyncio
from datetime import date

import pytest

from clientsync.cache import (
    CacheSource,
    DataCategory,
    RequestCoalescer,
    TimedCache,
    crossed_day_boundary,
    get_ttl_for_category,
)
from clientsync.errors import TransientNetworkError


# =============================================================================
# TimedCache
# =============================================================================

class TestTimedCache:
    """Tests for freshness, per-entry TTL and invalidation."""

    def test_fresh_just_before_ttl_and_stale_just_after(self, clock):
        cache = TimedCache(default_ttl=120, clock=clock)
        cache.set("entitlement", "snapshot")

        clock.advance(119)
        assert cache.get("entitlement").fresh

        clock.advance(2)
        hit = cache.get("entitlement")
        assert hit is not None
        assert not hit.fresh
        assert hit.value == "snapshot"
        assert hit.source is CacheSource.STALE

    def test_miss_returns_none(self, clock):
        cache = TimedCache(default_ttl=60, clock=clock)
        assert cache.get("missing") is None

    def test_per_entry_ttl_overrides_default(self, clock):
        cache = TimedCache(default_ttl=600, clock=clock)
        cache.set("short", 1, ttl=10)
        cache.set("long", 2)

        clock.advance(30)
        assert not cache.get("short").fresh
        assert cache.get("long").fresh

    def test_set_replaces_entry_and_restarts_age(self, clock):
        cache = TimedCache(default_ttl=60, clock=clock)
        cache.set("key", "old")
        clock.advance(59)
        cache.set("key", "new")
        clock.advance(30)

        hit = cache.get("key")
        assert hit.value == "new"
        assert hit.fresh
        assert hit.age_seconds == 30

    def test_invalidate_single_key(self, clock):
        cache = TimedCache(default_ttl=60, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.invalidate("a") == 1
        assert cache.invalidate("a") == 0
        assert "a" not in cache
        assert "b" in cache

    def test_invalidate_all(self, clock):
        cache = TimedCache(default_ttl=60, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.invalidate() == 2
        assert len(cache) == 0

    def test_stats_track_fresh_stale_and_misses(self, clock):
        cache = TimedCache(default_ttl=10, clock=clock)
        cache.get("a")
        cache.set("a", 1)
        cache.get("a")
        clock.advance(11)
        cache.get("a")

        stats = cache.get_stats()
        assert stats["entries"] == 1
        assert stats["misses"] == 1
        assert stats["hits_fresh"] == 1
        assert stats["hits_stale"] == 1


class TestTtlPolicies:
    """Tests for category TTLs and the daily reset rule."""

    def test_category_ttls_come_from_settings(self, config):
        assert get_ttl_for_category(DataCategory.ENTITLEMENT_STATUS, config) == 120
        assert get_ttl_for_category(DataCategory.PLAN_CATALOG, config) == 600
        assert get_ttl_for_category(DataCategory.SAVED_ITEMS, config) == 120
        assert get_ttl_for_category(DataCategory.CONFIRMATION_OUTCOME, config) == 30

    def test_crossed_day_boundary(self):
        assert crossed_day_boundary(date(2025, 1, 14), date(2025, 1, 15))
        assert not crossed_day_boundary(date(2025, 1, 15), date(2025, 1, 15))
        assert not crossed_day_boundary(None, date(2025, 1, 15))


# =============================================================================
# RequestCoalescer
# =============================================================================

class TestRequestCoalescer:
    """Tests for sharing one in-flight request between callers."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_request(self):
        coalescer = RequestCoalescer()
        calls = 0
        release = asyncio.Event()

        async def producer():
            nonlocal calls
            calls += 1
            await release.wait()
            return "result"

        first = asyncio.ensure_future(coalescer.run("key", producer))
        second = asyncio.ensure_future(coalescer.run("key", producer))
        await asyncio.sleep(0)
        assert coalescer.is_in_flight("key")

        release.set()
        results = await asyncio.gather(first, second)

        assert results == ["result", "result"]
        assert calls == 1
        assert not coalescer.is_in_flight("key")
        assert coalescer.active_requests == 0

    @pytest.mark.asyncio
    async def test_failure_is_delivered_to_every_caller(self):
        coalescer = RequestCoalescer()
        calls = 0

        async def producer():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            raise TransientNetworkError("down")

        results = await asyncio.gather(
            coalescer.run("key", producer),
            coalescer.run("key", producer),
            return_exceptions=True,
        )

        assert calls == 1
        assert all(isinstance(r, TransientNetworkError) for r in results)
        assert coalescer.active_requests == 0

    @pytest.mark.asyncio
    async def test_call_after_completion_starts_new_request(self):
        coalescer = RequestCoalescer()
        calls = 0

        async def producer():
            nonlocal calls
            calls += 1
            return calls

        assert await coalescer.run("key", producer) == 1
        assert await coalescer.run("key", producer) == 2

    @pytest.mark.asyncio
    async def test_different_keys_do_not_coalesce(self):
        coalescer = RequestCoalescer()
        calls = []

        async def producer_for(key):
            async def producer():
                calls.append(key)
                await asyncio.sleep(0)
                return key
            return producer

        results = await asyncio.gather(
            coalescer.run("a", await producer_for("a")),
            coalescer.run("b", await producer_for("b")),
        )

        assert results == ["a", "b"]
        assert sorted(calls) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_request(self):
        coalescer = RequestCoalescer()
        release = asyncio.Event()

        async def producer():
            await release.wait()
            return "done"

        first = asyncio.ensure_future(coalescer.run("key", producer))
        second = asyncio.ensure_future(coalescer.run("key", producer))
        await asyncio.sleep(0)

        second.cancel()
        release.set()

        assert await first == "done"
        with pytest.raises(asyncio.CancelledError):
            await second

    @pytest.mark.asyncio
    async def test_fresh_call_waits_out_earlier_request(self):
        coalescer = RequestCoalescer()
        release = asyncio.Event()
        versions = iter(["before", "after"])

        async def producer():
            version = next(versions)
            await release.wait()
            return version

        earlier = asyncio.ensure_future(coalescer.run("key", producer))
        await asyncio.sleep(0)
        later = asyncio.ensure_future(coalescer.run("key", producer, fresh=True))
        await asyncio.sleep(0)

        release.set()

        assert await earlier == "before"
        assert await later == "after"
        assert coalescer.active_requests == 0

    @pytest.mark.asyncio
    async def test_fresh_call_ignores_earlier_failure(self):
        coalescer = RequestCoalescer()
        release = asyncio.Event()
        outcomes = iter([TransientNetworkError("offline"), "ok"])

        async def producer():
            outcome = next(outcomes)
            await release.wait()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        earlier = asyncio.ensure_future(coalescer.run("key", producer))
        await asyncio.sleep(0)
        later = asyncio.ensure_future(coalescer.run("key", producer, fresh=True))
        await asyncio.sleep(0)
        release.set()

        with pytest.raises(TransientNetworkError):
            await earlier
        assert await later == "ok"
