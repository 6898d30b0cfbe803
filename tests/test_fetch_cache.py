"""
tests/test_fetch_cache.py — Fetch coalescing, post buckets and the KV stores.

Run with:  pytest tests/test_fetch_cache.py -v
"""

import asyncio

import pytest

from conftest import make_post
from src.services.fetch_cache import FetchCoalescer, InflightRegistry, post_cache_key
from src.services.kv_store import DatabaseKVStore, MemoryKVStore
from src.utils.errors import ErrorKind, UpstreamError

HOUR = 3600.0


class _Clock:
    def __init__(self, now: float = 500_000 * HOUR):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _Fetcher:
    """Counts upstream calls; optionally blocks until released."""

    def __init__(self, posts=None, gate: asyncio.Event | None = None, error: Exception | None = None):
        self.posts = posts if posts is not None else [make_post("alice", "1")]
        self.gate = gate
        self.error = error
        self.calls = 0

    async def __call__(self, account, range_days, cancel):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.posts)


def _coalescer(fetcher, clock=None, **kwargs) -> tuple[FetchCoalescer, MemoryKVStore]:
    clock = clock or _Clock()
    store = MemoryKVStore(clock=clock)
    return FetchCoalescer(store, fetcher, bucket_hours=4, clock=clock, **kwargs), store


# ═════════════════════════════════════════════
# COALESCING
# ═════════════════════════════════════════════

class TestCoalescing:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self):
        gate = asyncio.Event()
        fetcher = _Fetcher(gate=gate)
        coalescer, _ = _coalescer(fetcher)

        tasks = [asyncio.create_task(coalescer.fetch("alice", 1)) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert fetcher.calls == 1
        assert [r.shared for r in results] == [False, True, True]
        assert all(r.posts[0].id == "1" for r in results)
        assert len(coalescer.registry) == 0

    @pytest.mark.asyncio
    async def test_second_call_served_from_bucket(self):
        fetcher = _Fetcher()
        coalescer, store = _coalescer(fetcher)

        first = await coalescer.fetch("alice", 1)
        second = await coalescer.fetch("ALICE", 1)

        assert not first.served_from_cache
        assert second.served_from_cache and not second.stale
        assert fetcher.calls == 1
        assert await store.get(post_cache_key("alice", 1, coalescer.bucket())) is not None

    @pytest.mark.asyncio
    async def test_range_is_part_of_the_key(self):
        fetcher = _Fetcher()
        coalescer, _ = _coalescer(fetcher)
        await coalescer.fetch("alice", 1)
        await coalescer.fetch("alice", 7)
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_empty_result_not_cached(self):
        fetcher = _Fetcher(posts=[])
        coalescer, _ = _coalescer(fetcher)
        await coalescer.fetch("alice", 1)
        await coalescer.fetch("alice", 1)
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_owner_error_reaches_joiners(self):
        gate = asyncio.Event()
        fetcher = _Fetcher(gate=gate, error=UpstreamError(ErrorKind.TRANSIENT, "down"))
        coalescer, _ = _coalescer(fetcher)

        tasks = [asyncio.create_task(coalescer.fetch("alice", 1)) for _ in range(2)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, UpstreamError) for r in results)
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_owner_cancellation_makes_joiner_fetch_itself(self):
        gate = asyncio.Event()
        calls = {"n": 0}

        async def fetcher(account, range_days, cancel):
            calls["n"] += 1
            if calls["n"] == 1:
                await gate.wait()
            return [make_post(account, "9")]

        coalescer, _ = _coalescer(fetcher)
        owner = asyncio.create_task(coalescer.fetch("alice", 1))
        await asyncio.sleep(0)
        joiner = asyncio.create_task(coalescer.fetch("alice", 1))
        await asyncio.sleep(0)

        owner.cancel()
        result = await joiner

        assert calls["n"] == 2
        assert result.posts[0].id == "9"
        with pytest.raises(asyncio.CancelledError):
            await owner


# ═════════════════════════════════════════════
# STALE-WHILE-REVALIDATE
# ═════════════════════════════════════════════

class TestStaleBucket:
    @pytest.mark.asyncio
    async def test_previous_bucket_served_and_refreshed(self):
        clock = _Clock()
        fetcher = _Fetcher(posts=[make_post("alice", "new")])
        coalescer, store = _coalescer(fetcher, clock=clock)
        bucket = coalescer.bucket()
        await store.put(
            post_cache_key("alice", 1, bucket - 1),
            [make_post("alice", "old").model_dump(mode="json")],
        )

        result = await coalescer.fetch("alice", 1)
        assert result.stale and result.served_from_cache
        assert result.posts[0].id == "old"

        await coalescer.wait_for_refreshes()
        assert fetcher.calls == 1
        fresh = await coalescer.fetch("alice", 1)
        assert fresh.posts[0].id == "new" and not fresh.stale

    @pytest.mark.asyncio
    async def test_bucket_rolls_over(self):
        clock = _Clock()
        fetcher = _Fetcher()
        coalescer, _ = _coalescer(fetcher, clock=clock)
        await coalescer.fetch("alice", 1)

        clock.now += 4 * HOUR
        result = await coalescer.fetch("alice", 1)
        # last bucket's entry is now the stale fallback
        assert result.stale
        await coalescer.aclose()


# ═════════════════════════════════════════════
# IN-FLIGHT REGISTRY
# ═════════════════════════════════════════════

class TestInflightRegistry:
    @pytest.mark.asyncio
    async def test_entry_expires_after_timeout(self):
        registry = InflightRegistry(timeout=0.01)
        future = asyncio.get_running_loop().create_future()
        registry.register("k", future)
        assert "k" in registry
        await asyncio.sleep(0.05)
        assert "k" not in registry
        future.cancel()

    @pytest.mark.asyncio
    async def test_release_ignores_foreign_future(self):
        registry = InflightRegistry(timeout=10)
        loop = asyncio.get_running_loop()
        mine, other = loop.create_future(), loop.create_future()
        registry.register("k", mine)
        registry.release("k", other)
        assert registry.get("k") is mine
        registry.release("k", mine)
        assert len(registry) == 0


# ═════════════════════════════════════════════
# KV STORES
# ═════════════════════════════════════════════

class TestKVStores:
    @pytest.mark.asyncio
    async def test_memory_store_ttl(self):
        clock = _Clock(1000.0)
        store = MemoryKVStore(clock=clock)
        await store.put("k", {"v": 1}, ttl=10)
        assert await store.get("k") == {"v": 1}
        clock.now += 10
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_database_store_roundtrip_and_purge(self, session_factory):
        store = DatabaseKVStore(session_factory)
        await store.put("live", {"signals": []}, ttl=3600)
        await store.put("dead", [1, 2], ttl=-1)
        await store.put("forever", "x")

        assert await store.get("live") == {"signals": []}
        assert await store.get("dead") is None
        assert await store.get("forever") == "x"

        assert await store.purge_expired() == 1
        await store.delete("live")
        assert await store.get("live") is None

    @pytest.mark.asyncio
    async def test_database_store_overwrites_in_place(self, session_factory):
        store = DatabaseKVStore(session_factory)
        await asyncio.gather(store.put("k", {"v": 1}, ttl=60), store.put("k", {"v": 2}, ttl=60))
        await store.put("k", {"v": 3}, ttl=60)
        assert await store.get("k") == {"v": 3}
