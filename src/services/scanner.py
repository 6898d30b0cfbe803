"""
src/services/scanner.py — Scan orchestration.

One scan, start to finish:

  1. scan-level cache (layer 1) → hit returns immediately
  2. fetch every account (bounded concurrency; failures become warnings)
  3. no posts at all → error notice, return None
  4. per-post caches (layers 2 and 3) remove already-analysed posts
  5. batch + analyse the rest; each batch is cached as it completes
  6. merge, normalise, dedupe; write layer 1 again
  7. return the result

The same Scanner serves interactive requests and the scheduler; only the
injected fetch function differs (coalesced + shared cache on the server).
"""

import logging
from typing import Callable

from config import settings
from schemas import AccountPosts, ScanRequest, ScanResult, ScanStats, Signal
from src.integrations.anthropic_client import LLMClient
from src.integrations.twitter_client import FetchFn, fetch_all_posts
from src.services.analysis import AnalysisPool
from src.services.batching import build_batches
from src.services.scan_cache import ScanCaches
from src.services.signals import dedupe_signals, normalize_signals
from src.utils.errors import ScanFailed
from src.utils.hashing import scan_cache_key, scan_identity

logger = logging.getLogger(__name__)

StatusFn = Callable[[str], None]
NoticeFn = Callable[[str, str], None]  # (level, message); level is "error" | "warning"

_POST_META_TEXT = 500


def _describe_failures(failed: list[AccountPosts]) -> str:
    return ", ".join(f"{a.account} ({a.error})" if a.error else a.account for a in failed)


class Scanner:
    def __init__(
        self,
        *,
        fetch: FetchFn,
        llm: LLMClient,
        caches: ScanCaches,
        fetch_concurrency: int | None = None,
        analysis_concurrency: int | None = None,
        backoff_scale: float = 1.0,
    ):
        self.fetch = fetch
        self.llm = llm
        self.caches = caches
        self.fetch_concurrency = fetch_concurrency or settings.fetch_concurrency
        self.analysis_concurrency = analysis_concurrency
        self.backoff_scale = backoff_scale

    async def run_scan(
        self,
        request: ScanRequest,
        cancel=None,
        on_status: StatusFn | None = None,
        on_notice: NoticeFn | None = None,
    ) -> ScanResult | None:
        """Run one scan.

        Returns None when no account produced any posts (an "error" notice
        has been emitted).

        Raises:
            ScanFailed: nothing came back and every analysis batch failed.
            ScanCancelled: the token fired.
        """
        status = on_status or (lambda _msg: None)
        notice = on_notice or (lambda _level, _msg: None)
        p_hash = request.prompt_hash
        key = scan_cache_key(request.accounts, request.range_days, p_hash)
        identity = scan_identity(request.accounts, request.range_days, p_hash)

        # ── Layer 1 ───────────────────────────────────────────────────────
        cached = await self.caches.scans.get(key, identity)
        if cached is not None:
            logger.info("Scan cache hit %s (%d signals)", key, len(cached["signals"]))
            status("Loaded from cache")
            return ScanResult(
                signals=cached["signals"],
                total_posts=cached["total_posts"],
                accounts=request.accounts,
                range_days=request.range_days,
                from_cache=True,
            )

        # ── Fetch ─────────────────────────────────────────────────────────
        status(f"Fetching {len(request.accounts)} accounts")
        fetched = await fetch_all_posts(
            self.fetch,
            request.accounts,
            request.range_days,
            cancel,
            status,
            concurrency=self.fetch_concurrency,
        )
        failed = [a for a in fetched if a.error and not a.posts]
        with_posts = [a for a in fetched if a.posts]
        total_posts = sum(len(a.posts) for a in with_posts)

        if total_posts == 0:
            message = "No posts found for this time range"
            if failed:
                message += f" — errors: {_describe_failures(failed)}"
            notice("error", message)
            return None

        warnings: list[str] = []
        if failed:
            warning = f"Errors: {', '.join(a.account for a in failed)}"
            warnings.append(warning)
            notice("warning", warning)

        post_meta: dict[str, dict] = {}
        ordered_urls: list[str] = []
        for entry in with_posts:
            for post in entry.posts:
                url = post.canonical_url
                if url in post_meta:
                    continue
                ordered_urls.append(url)
                post_meta[url] = {
                    "author": entry.account,
                    "text": post.text[:_POST_META_TEXT],
                    "time": post.created_at.isoformat(),
                }

        # ── Layers 2 + 3 ──────────────────────────────────────────────────
        status(f"{total_posts} posts fetched · Checking cache")
        hits, _sources = await self.caches.lookup_posts(p_hash, ordered_urls)
        remaining = [
            AccountPosts(
                account=entry.account,
                posts=[p for p in entry.posts if p.canonical_url not in hits],
            )
            for entry in with_posts
        ]
        remaining = [a for a in remaining if a.posts]
        analyzed_posts = sum(len(a.posts) for a in remaining)
        logger.info(
            "Scan %s: %d posts, %d cached, %d to analyse",
            key, total_posts, len(hits), analyzed_posts,
        )

        # ── Analysis ──────────────────────────────────────────────────────
        async def _store_batch(batch, grouped: dict[str, list[Signal]]) -> None:
            await self.caches.store_posts(p_hash, grouped, request.model)

        batches = build_batches(remaining, len(request.prompt))
        pool = AnalysisPool(
            self.llm,
            model=request.model,
            prompt=request.prompt,
            on_batch_done=_store_batch,
            concurrency=self.analysis_concurrency,
            backoff_scale=self.backoff_scale,
            total_posts=total_posts,
        )
        outcome = await pool.analyze(batches, cancel, status)

        cached_signals: list[Signal] = []
        for url in ordered_urls:
            cached_signals.extend(hits.get(url, []))
        fresh_signals = outcome.signals

        failed_batches = [
            f"Batch {f.index + 1}: {f.message}" for f in outcome.failures
        ]
        if (
            not cached_signals
            and not fresh_signals
            and batches
            and len(outcome.failures) == len(batches)
        ):
            # surface a non-retryable provider error (bad key, billing) as is
            for failure in outcome.failures:
                if failure.error is not None and not failure.error.retryable:
                    raise failure.error
            message = f"Analysis failed ({len(outcome.failures)}/{len(batches)} batches failed)"
            first = outcome.failures[0].message
            raise ScanFailed(f"{message}: {first}", failed_batches)

        if outcome.failures:
            logger.warning(
                "Scan %s: %d/%d batches failed; returning partial result",
                key, len(outcome.failures), len(batches),
            )

        signals = dedupe_signals(normalize_signals(cached_signals + fresh_signals))

        # ── Persist ───────────────────────────────────────────────────────
        self.caches.local.save()
        await self.caches.scans.put(key, signals, total_posts, identity)

        return ScanResult(
            signals=signals,
            total_posts=total_posts,
            accounts=request.accounts,
            range_days=request.range_days,
            warnings=warnings,
            failed_accounts=[a.account for a in failed],
            failed_batches=failed_batches,
            post_meta=post_meta,
            stats=ScanStats(
                cached_posts=len(hits),
                analyzed_posts=analyzed_posts,
                batches=len(batches),
                input_tokens=outcome.input_tokens,
                output_tokens=outcome.output_tokens,
            ),
        )
