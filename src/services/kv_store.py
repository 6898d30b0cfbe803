"""
src/services/kv_store.py — Key-value cache stores with per-key TTL.

Two implementations of the same small interface:
  - MemoryKVStore    — process-local dict, used by tests and single-node dev
  - DatabaseKVStore  — cache_entries table, shared by every worker

Values are JSON-serialisable (dicts / lists). Expired keys read as misses.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import upsert_insert
from models import CacheEntry, as_utc

logger = logging.getLogger(__name__)


class KVStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def put(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryKVStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, tuple[Any, float | None]] = {}

    async def get(self, key: str) -> Any | None:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires = item
        if expires is not None and self._clock() >= expires:
            self._data.pop(key, None)
            return None
        return value

    async def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires = self._clock() + ttl if ttl else None
        self._data[key] = (value, expires)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class DatabaseKVStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def get(self, key: str) -> Any | None:
        async with self._sessions() as db:
            row = await db.get(CacheEntry, key)
            if row is None:
                return None
            expires = as_utc(row.expires_at)
            if expires is not None and expires <= datetime.now(timezone.utc):
                return None
            return row.value

    async def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires = datetime.now(timezone.utc) + timedelta(seconds=ttl) if ttl else None
        async with self._sessions() as db:
            stmt = upsert_insert(db)(CacheEntry).values(key=key, value=value, expires_at=expires)
            stmt = stmt.on_conflict_do_update(
                index_elements=["key"],
                set_={"value": stmt.excluded.value, "expires_at": stmt.excluded.expires_at},
            )
            await db.execute(stmt)
            await db.commit()

    async def delete(self, key: str) -> None:
        async with self._sessions() as db:
            await db.execute(delete(CacheEntry).where(CacheEntry.key == key))
            await db.commit()

    async def purge_expired(self) -> int:
        """Delete expired rows. Returns how many were removed."""
        now = datetime.now(timezone.utc)
        async with self._sessions() as db:
            keys = (
                await db.execute(
                    select(CacheEntry.key).where(
                        CacheEntry.expires_at.is_not(None), CacheEntry.expires_at <= now
                    )
                )
            ).scalars().all()
            if keys:
                await db.execute(delete(CacheEntry).where(CacheEntry.key.in_(keys)))
                await db.commit()
        if keys:
            logger.info("Purged %d expired cache entries", len(keys))
        return len(keys)
