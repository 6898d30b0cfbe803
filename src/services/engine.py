"""
src/services/engine.py — Builds the process-wide scan engine.

One ScanEngine per process, created in the app lifespan and stored on
`app.state.engine`. Interactive and scheduled scans share the caches, the
coalescing fetcher and the ledger; they differ only in fetch concurrency.
"""

import logging
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from src.integrations.anthropic_client import AnthropicClient, LLMClient
from src.integrations.twitter_client import TwitterClient, client_fetch
from src.services.credits import CreditLedger
from src.services.fetch_cache import FetchCoalescer
from src.services.kv_store import DatabaseKVStore, KVStore
from src.services.scan_cache import (
    LocalAnalysisCache,
    ScanCaches,
    ScanResultCache,
    SharedAnalysisCache,
)
from src.services.scanner import Scanner
from src.services.scheduler import ScheduleRunner

logger = logging.getLogger(__name__)


@dataclass
class ScanEngine:
    store: KVStore
    caches: ScanCaches
    coalescer: FetchCoalescer
    ledger: CreditLedger
    llm: LLMClient
    scanner: Scanner
    runner: ScheduleRunner
    twitter: TwitterClient | None = None

    async def maintenance(self) -> None:
        """Hourly housekeeping: expired KV rows and old shared-cache rows."""
        if isinstance(self.store, DatabaseKVStore):
            await self.store.purge_expired()
        if self.caches.shared is not None:
            await self.caches.shared.cleanup()
        self.ledger.book.sweep()

    async def aclose(self) -> None:
        await self.coalescer.aclose()
        self.caches.local.save()
        if self.twitter is not None:
            await self.twitter.aclose()
        await self.llm.aclose()


def build_engine(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    twitter: TwitterClient | None = None,
    llm: LLMClient | None = None,
    store: KVStore | None = None,
) -> ScanEngine:
    twitter = twitter or TwitterClient()
    llm = llm or AnthropicClient()
    store = store or DatabaseKVStore(session_factory)

    caches = ScanCaches(
        scans=ScanResultCache(store),
        local=LocalAnalysisCache(settings.local_cache_path or None),
        shared=SharedAnalysisCache(session_factory),
    )
    coalescer = FetchCoalescer(store, client_fetch(twitter))
    ledger = CreditLedger(session_factory)

    scanner = Scanner(fetch=coalescer.fetch_posts, llm=llm, caches=caches)
    scheduled_scanner = Scanner(
        fetch=coalescer.fetch_posts,
        llm=llm,
        caches=caches,
        fetch_concurrency=settings.server_fetch_concurrency,
    )
    runner = ScheduleRunner(session_factory, scheduled_scanner, ledger)

    return ScanEngine(
        store=store,
        caches=caches,
        coalescer=coalescer,
        ledger=ledger,
        llm=llm,
        scanner=scanner,
        runner=runner,
        twitter=twitter,
    )


def get_engine(request: Request) -> ScanEngine:
    """FastAPI dependency returning the engine built at startup."""
    return request.app.state.engine
