"""Unit tests for DedupCache."""

import asyncio

import pytest

from billing.dedup import DedupCache
from errors import UpstreamError


class CountingLoader:
    """Async loader that records calls and can be held open or made to fail."""

    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.calls = []
        self.delay = delay
        self.fail = fail
        self.release = None

    async def __call__(self, key):
        self.calls.append(key)
        if self.release is not None:
            await self.release.wait()
        elif self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise UpstreamError(f"upstream down for {key}")
        return {"key": key, "call": len(self.calls)}


class TestDeduplication:

    @pytest.mark.asyncio
    async def test_concurrent_gets_share_one_load(self):
        loader = CountingLoader(delay=0.5)
        cache = DedupCache(loader, ttl=2.0, max_size=100)

        results = await asyncio.gather(*(cache.get("u1") for _ in range(50)))

        assert loader.calls == ["u1"]
        assert len(results) == 50
        assert all(r is results[0] for r in results)
        assert len(cache) == 1
        assert cache.stats() == {"in_flight": 0, "cached": 1}

    @pytest.mark.asyncio
    async def test_different_keys_load_independently(self):
        loader = CountingLoader(delay=0.01)
        cache = DedupCache(loader)

        a, b = await asyncio.gather(cache.get("a"), cache.get("b"))

        assert sorted(loader.calls) == ["a", "b"]
        assert a["key"] == "a" and b["key"] == "b"

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_and_is_not_cached(self):
        loader = CountingLoader(delay=0.01, fail=True)
        cache = DedupCache(loader)

        results = await asyncio.gather(*(cache.get("u1") for _ in range(5)), return_exceptions=True)

        assert loader.calls == ["u1"]
        assert all(isinstance(r, UpstreamError) for r in results)
        assert all(r is results[0] for r in results)
        assert cache.stats() == {"in_flight": 0, "cached": 0}

        loader.fail = False
        value = await cache.get("u1")
        assert value["call"] == 2
        assert loader.calls == ["u1", "u1"]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_load(self):
        loader = CountingLoader()
        loader.release = asyncio.Event()
        cache = DedupCache(loader)

        first = asyncio.ensure_future(cache.get("u1"))
        second = asyncio.ensure_future(cache.get("u1"))
        await asyncio.sleep(0)
        first.cancel()
        loader.release.set()

        assert (await second)["key"] == "u1"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert loader.calls == ["u1"]

    @pytest.mark.asyncio
    async def test_zero_ttl_deduplicates_without_caching(self):
        loader = CountingLoader(delay=0.01)
        cache = DedupCache(loader, ttl=0)

        await asyncio.gather(cache.get("u1"), cache.get("u1"))
        assert loader.calls == ["u1"]
        assert len(cache) == 0

        await cache.get("u1")
        assert loader.calls == ["u1", "u1"]


class TestExpiry:

    @pytest.mark.asyncio
    async def test_hit_before_ttl_reload_after(self, clock):
        loader = CountingLoader()
        cache = DedupCache(loader, ttl=2.0, clock=clock)

        first = await cache.get("u1")

        clock.advance(1.99)
        assert await cache.get("u1") is first
        assert len(loader.calls) == 1

        clock.advance(0.02)
        second = await cache.get("u1")
        assert second["call"] == 2
        assert len(loader.calls) == 2


class TestInvalidation:

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self):
        loader = CountingLoader()
        cache = DedupCache(loader)

        await cache.get("u1")
        cache.invalidate("u1")
        await cache.get("u1")

        assert loader.calls == ["u1", "u1"]

    @pytest.mark.asyncio
    async def test_invalidate_missing_key_is_noop(self):
        cache = DedupCache(CountingLoader())
        cache.invalidate("nobody")
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_invalidate_during_load_skips_caching(self):
        loader = CountingLoader()
        loader.release = asyncio.Event()
        cache = DedupCache(loader)

        pending = asyncio.ensure_future(cache.get("u1"))
        await asyncio.sleep(0)
        cache.invalidate("u1")
        loader.release.set()

        assert (await pending)["call"] == 1
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_clear(self):
        loader = CountingLoader()
        cache = DedupCache(loader)
        await asyncio.gather(cache.get("a"), cache.get("b"))

        cache.clear()

        assert len(cache) == 0


class TestEviction:

    @pytest.mark.asyncio
    async def test_oldest_entries_evicted_first(self, clock):
        loader = CountingLoader()
        cache = DedupCache(loader, ttl=60, max_size=3, clock=clock)

        for key in ["a", "b", "c", "d"]:
            await cache.get(key)
            clock.advance(1)

        assert len(cache) == 3
        await cache.get("b")
        await cache.get("c")
        await cache.get("d")
        assert loader.calls == ["a", "b", "c", "d"]

        await cache.get("a")
        assert loader.calls == ["a", "b", "c", "d", "a"]

    @pytest.mark.asyncio
    async def test_expired_entries_purged_before_live_ones(self, clock):
        loader = CountingLoader()
        cache = DedupCache(loader, ttl=10, max_size=2, clock=clock)

        await cache.get("old")
        clock.advance(11)
        await cache.get("b")
        await cache.get("c")

        assert len(cache) == 2
        await cache.get("b")
        await cache.get("c")
        assert loader.calls == ["old", "b", "c"]

    def test_rejects_bad_limits(self):
        with pytest.raises(ValueError):
            DedupCache(CountingLoader(), ttl=-1)
        with pytest.raises(ValueError):
            DedupCache(CountingLoader(), max_size=0)
