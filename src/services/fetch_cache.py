"""
src/services/fetch_cache.py — Fetch coalescing and stale-while-revalidate cache.

Shared, server-side layer in front of the posts API:

  1. fresh bucket hit       → return it
  2. previous bucket hit    → return it now, refresh the fresh bucket in the
                              background (one refresh task per key)
  3. fetch already running  → await it and share the result
  4. otherwise              → fetch, register as in-flight, store on success

Buckets are `post_cache_hours` wide, so a key changes at most every few
hours and the previous bucket is always a safe stale fallback.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from config import settings
from schemas import Post
from src.services.kv_store import KVStore
from src.utils.cancellation import CancelToken, ScanCancelled

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, int, CancelToken | None], Awaitable[list[Post]]]


@dataclass
class CoalescedFetch:
    posts: list[Post]
    served_from_cache: bool = False
    stale: bool = False
    shared: bool = False   # joined another caller's in-flight fetch


def post_cache_key(account: str, range_days: int, bucket: int) -> str:
    return f"posts:{account.lower()}:{range_days}:{bucket}"


class InflightRegistry:
    """In-flight fetches keyed by cache key.

    Entries leave on completion, or after `timeout` seconds if the owner
    never finishes.
    """

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._futures: dict[str, asyncio.Future] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def get(self, key: str) -> asyncio.Future | None:
        return self._futures.get(key)

    def register(self, key: str, future: asyncio.Future) -> None:
        self._futures[key] = future
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.timeout, self._expire, key, future)

    def _expire(self, key: str, future: asyncio.Future) -> None:
        if self._futures.get(key) is future:
            logger.warning("In-flight fetch %s exceeded %.0fs; releasing key", key, self.timeout)
            self._futures.pop(key, None)
        self._timers.pop(key, None)

    def release(self, key: str, future: asyncio.Future) -> None:
        if self._futures.get(key) is future:
            self._futures.pop(key, None)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def __contains__(self, key: str) -> bool:
        return key in self._futures

    def __len__(self) -> int:
        return len(self._futures)


def _dump(posts: list[Post]) -> list[dict]:
    return [p.model_dump(mode="json") for p in posts]


def _load(raw: list[dict]) -> list[Post]:
    return [Post.model_validate(p) for p in raw]


class FetchCoalescer:
    def __init__(
        self,
        store: KVStore,
        fetcher: Fetcher,
        *,
        registry: InflightRegistry | None = None,
        bucket_hours: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.fetcher = fetcher
        self.registry = registry or InflightRegistry(settings.inflight_timeout)
        self.bucket_seconds = (bucket_hours or settings.post_cache_hours) * 3600
        self._clock = clock
        self._refreshing: dict[str, asyncio.Task] = {}

    def bucket(self) -> int:
        return int(self._clock() // self.bucket_seconds)

    async def fetch(
        self, account: str, range_days: int, cancel: CancelToken | None = None
    ) -> CoalescedFetch:
        bucket = self.bucket()
        key = post_cache_key(account, range_days, bucket)

        cached = await self._read(key)
        if cached is not None:
            return CoalescedFetch(posts=cached, served_from_cache=True)

        stale_key = post_cache_key(account, range_days, bucket - 1)
        stale = await self._read(stale_key)
        if stale is not None:
            self._schedule_refresh(key, account, range_days)
            return CoalescedFetch(posts=stale, served_from_cache=True, stale=True)

        pending = self.registry.get(key)
        if pending is not None:
            try:
                posts = await asyncio.shield(pending)
                return CoalescedFetch(posts=posts, shared=True)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                logger.debug("In-flight fetch %s was cancelled by its owner; fetching", key)

        posts = await self._fetch_and_store(key, account, range_days, cancel)
        return CoalescedFetch(posts=posts)

    async def fetch_posts(
        self, account: str, range_days: int, cancel: CancelToken | None = None
    ) -> list[Post]:
        """FetchFn-shaped adapter for fetch_all_posts."""
        return (await self.fetch(account, range_days, cancel)).posts

    async def _read(self, key: str) -> list[Post] | None:
        try:
            raw = await self.store.get(key)
        except Exception as exc:
            logger.warning("Post cache read failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        return _load(raw)

    async def _fetch_and_store(
        self, key: str, account: str, range_days: int, cancel: CancelToken | None
    ) -> list[Post]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self.registry.register(key, future)
        try:
            posts = await self.fetcher(account, range_days, cancel)
        except (ScanCancelled, asyncio.CancelledError):
            # the owner's cancellation is not the joiners' failure
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # consumed here so an unawaited future does not log "never retrieved"
            future.exception()
            raise
        else:
            future.set_result(posts)
            if posts:
                try:
                    await self.store.put(key, _dump(posts), ttl=self.bucket_seconds)
                except Exception as exc:
                    logger.warning("Post cache write failed for %s: %s", key, exc)
            return posts
        finally:
            self.registry.release(key, future)

    def _schedule_refresh(self, key: str, account: str, range_days: int) -> None:
        if key in self._refreshing or key in self.registry:
            return

        async def _refresh() -> None:
            try:
                posts = await self._fetch_and_store(key, account, range_days, None)
                logger.debug("Background refresh of %s stored %d posts", key, len(posts))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Background refresh of %s failed: %s", key, exc)
            finally:
                self._refreshing.pop(key, None)

        self._refreshing[key] = asyncio.create_task(_refresh())

    async def wait_for_refreshes(self) -> None:
        tasks = list(self._refreshing.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._refreshing.values()):
            task.cancel()
        await self.wait_for_refreshes()
