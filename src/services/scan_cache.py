"""
src/services/scan_cache.py — The three cache layers behind a scan.

  Layer 1  ScanResultCache      whole-scan result, KV store, 24h TTL
  Layer 2  LocalAnalysisCache   per-post results, this process (optionally
                                mirrored to a JSON file), LRU-capped
  Layer 3  SharedAnalysisCache  per-post results, cross-user SQL table

Per-post keys are (prompt_hash, post_url). An empty signal list is a real
entry meaning "analysed, nothing found". Entries are never invalidated on
read; changing the prompt or model changes the key.
"""

import json
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import upsert_insert
from models import AnalysisCacheEntry
from schemas import Signal
from src.services.kv_store import KVStore

logger = logging.getLogger(__name__)

_SHARED_CHUNK = 100


def _dump(signals: Iterable[Signal]) -> list[dict]:
    return [s.model_dump(mode="json") for s in signals]


def _load(raw: Iterable[dict]) -> list[Signal]:
    return [Signal.model_validate(s) for s in raw]


# ─────────────────────────────────────────────
# Layer 1: scan results
# ─────────────────────────────────────────────

class ScanResultCache:
    def __init__(self, store: KVStore, ttl_seconds: int | None = None):
        self.store = store
        self.ttl = ttl_seconds or settings.scan_cache_ttl_seconds

    async def get(self, key: str, identity: dict | None = None) -> dict | None:
        """Return {"signals": [Signal], "total_posts": int, "ts": float} or None.

        With `identity`, an entry stored for a different request is a miss.
        """
        try:
            raw = await self.store.get(key)
        except Exception as exc:
            logger.warning("Scan cache read failed for %s: %s", key, exc)
            return None
        if not raw:
            return None
        if identity is not None and raw.get("identity") != identity:
            logger.warning("Scan cache entry %s belongs to another request; ignoring", key)
            return None
        return {
            "signals": _load(raw.get("signals") or []),
            "total_posts": int(raw.get("total_posts") or 0),
            "ts": raw.get("ts"),
        }

    async def put(
        self, key: str, signals: list[Signal], total_posts: int, identity: dict | None = None
    ) -> None:
        payload = {
            "signals": _dump(signals),
            "total_posts": total_posts,
            "ts": time.time(),
            "identity": identity,
        }
        try:
            await self.store.put(key, payload, ttl=self.ttl)
        except Exception as exc:
            logger.warning("Scan cache write failed for %s: %s", key, exc)


# ─────────────────────────────────────────────
# Layer 2: local per-post cache
# ─────────────────────────────────────────────

class LocalAnalysisCache:
    """Per-post results kept in this process, pruned oldest-first.

    With a `path`, the cache is loaded from and saved to a JSON file so it
    survives restarts.
    """

    def __init__(self, path: str | None = None, max_entries: int | None = None):
        self.path = Path(path) if path else None
        self.max_entries = max_entries or settings.local_cache_max_entries
        self._entries: dict[str, dict] = {}
        if self.path and self.path.exists():
            try:
                self._entries = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable local cache %s: %s", self.path, exc)
                self._entries = {}

    @staticmethod
    def key(prompt_hash: str, post_url: str) -> str:
        return f"{prompt_hash}:{post_url}"

    def get(self, prompt_hash: str, post_url: str) -> list[Signal] | None:
        entry = self._entries.get(self.key(prompt_hash, post_url))
        if entry is None:
            return None
        return _load(entry.get("signals") or [])

    def put(self, prompt_hash: str, post_url: str, signals: list[Signal]) -> None:
        self._entries[self.key(prompt_hash, post_url)] = {
            "signals": _dump(signals),
            "ts": time.time(),
        }

    def put_many(self, prompt_hash: str, grouped: dict[str, list[Signal]]) -> None:
        for url, signals in grouped.items():
            self.put(prompt_hash, url, signals)

    def prune(self) -> int:
        """Drop the oldest entries beyond max_entries. Returns how many went."""
        excess = len(self._entries) - self.max_entries
        if excess <= 0:
            return 0
        oldest = sorted(self._entries, key=lambda k: self._entries[k].get("ts") or 0)[:excess]
        for k in oldest:
            del self._entries[k]
        return excess

    def save(self) -> None:
        self.prune()
        if not self.path:
            return
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(self._entries), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.warning("Could not persist local cache to %s: %s", self.path, exc)

    def __len__(self) -> int:
        return len(self._entries)


# ─────────────────────────────────────────────
# Layer 3: shared per-post cache
# ─────────────────────────────────────────────

class SharedAnalysisCache:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def get_many(self, prompt_hash: str, post_urls: list[str]) -> dict[str, list[Signal]]:
        found: dict[str, list[Signal]] = {}
        async with self._sessions() as db:
            for start in range(0, len(post_urls), _SHARED_CHUNK):
                chunk = post_urls[start: start + _SHARED_CHUNK]
                rows = (
                    await db.execute(
                        select(AnalysisCacheEntry).where(
                            AnalysisCacheEntry.prompt_hash == prompt_hash,
                            AnalysisCacheEntry.post_url.in_(chunk),
                        )
                    )
                ).scalars().all()
                for row in rows:
                    found[row.post_url] = _load(row.signals or [])
        return found

    async def put_many(
        self, prompt_hash: str, grouped: dict[str, list[Signal]], model: str | None = None
    ) -> None:
        """Upsert one row per post; concurrent writers for the same post both succeed."""
        if not grouped:
            return
        urls = list(grouped)
        now = datetime.now(timezone.utc)
        async with self._sessions() as db:
            insert = upsert_insert(db)
            for start in range(0, len(urls), _SHARED_CHUNK):
                chunk = urls[start: start + _SHARED_CHUNK]
                stmt = insert(AnalysisCacheEntry).values(
                    [
                        {
                            "prompt_hash": prompt_hash,
                            "post_url": url,
                            "signals": _dump(grouped[url]),
                            "model": model,
                            "created_at": now,
                        }
                        for url in chunk
                    ]
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["prompt_hash", "post_url"],
                    set_={
                        "signals": stmt.excluded.signals,
                        "model": stmt.excluded.model,
                        "created_at": stmt.excluded.created_at,
                    },
                )
                await db.execute(stmt)
            await db.commit()

    async def cleanup(self, max_age_days: int | None = None) -> int:
        """Delete rows older than max_age_days. Returns the row count."""
        days = max_age_days or settings.shared_cache_max_age_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        async with self._sessions() as db:
            result = await db.execute(
                delete(AnalysisCacheEntry).where(AnalysisCacheEntry.created_at < cutoff)
            )
            await db.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Removed %d analysis cache rows older than %d days", removed, days)
        return removed


# ─────────────────────────────────────────────
# Facade
# ─────────────────────────────────────────────

class ScanCaches:
    """The three layers as the scan orchestrator sees them."""

    def __init__(
        self,
        scans: ScanResultCache,
        local: LocalAnalysisCache,
        shared: SharedAnalysisCache | None = None,
    ):
        self.scans = scans
        self.local = local
        self.shared = shared

    async def lookup_posts(
        self, prompt_hash: str, post_urls: list[str]
    ) -> tuple[dict[str, list[Signal]], dict[str, str]]:
        """Resolve layers 2 then 3. Returns (hits, source per hit url).

        Layer-3 hits are copied into layer 2. A failing layer 3 is a miss.
        """
        hits: dict[str, list[Signal]] = {}
        sources: dict[str, str] = {}
        missing: list[str] = []
        for url in post_urls:
            cached = self.local.get(prompt_hash, url)
            if cached is None:
                missing.append(url)
            else:
                hits[url] = cached
                sources[url] = "local"

        if missing and self.shared is not None:
            try:
                shared_hits = await self.shared.get_many(prompt_hash, missing)
            except Exception as exc:
                logger.warning("Shared analysis cache lookup failed: %s", exc)
                shared_hits = {}
            for url, signals in shared_hits.items():
                hits[url] = signals
                sources[url] = "shared"
                self.local.put(prompt_hash, url, signals)

        return hits, sources

    async def store_posts(
        self, prompt_hash: str, grouped: dict[str, list[Signal]], model: str | None = None
    ) -> None:
        self.local.put_many(prompt_hash, grouped)
        if self.shared is not None:
            try:
                await self.shared.put_many(prompt_hash, grouped, model)
            except Exception as exc:
                logger.warning("Shared analysis cache write failed: %s", exc)
