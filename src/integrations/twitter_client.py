"""
src/integrations/twitter_client.py — Posts API client (twitterapi.io compatible).

Fetches an account's recent posts page by page until the requested time
window is covered. All upstream failures leave this module as an
UpstreamError (tagged here, once) or as ScanCancelled.

No caching happens here; see src/services/fetch_cache.py.
"""

import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable

import httpx

from config import settings
from schemas import AccountPosts, Post
from src.utils import cancellation
from src.utils.cancellation import CancelToken, ScanCancelled
from src.utils.errors import ErrorKind, UpstreamError

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────
# Retry helper
# ─────────────────────────────────────────────

_REQUEST_TIMEOUT = 15.0           # seconds per HTTP request
_RATE_LIMIT_FALLBACK = 10.0       # used when a 429 has no Retry-After
_RATE_LIMIT_MAX_WAIT = 60.0
_RETRY_BASE_DELAY = 1.0
_RETRY_MAX_DELAY = 10.0
_PAGE_DELAY = 0.1
_MAX_ERROR_PAGES = 2


def backoff_delay(attempt: int, base: float, cap: float, jitter: float = 0.3) -> float:
    """base·2^attempt capped at `cap`, plus up to `jitter` of that on top."""
    delay = min(base * (2 ** attempt), cap)
    return delay + delay * jitter * random.random()


def _retry_after_seconds(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return min(max(float(value), 0.0), _RATE_LIMIT_MAX_WAIT)
    except ValueError:
        return None


# ─────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────

class TwitterClient:
    """Account-content fetcher.

    Docs: https://docs.twitterapi.io/api-reference/endpoint/get_user_last_tweets
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        http: httpx.AsyncClient | None = None,
        max_pages: int | None = None,
        page_retries: int | None = None,
        retry_base_delay: float = _RETRY_BASE_DELAY,
        rate_limit_fallback: float = _RATE_LIMIT_FALLBACK,
        page_delay: float = _PAGE_DELAY,
        budget: float | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.twitter_api_key
        self.max_pages = max_pages or settings.fetch_max_pages
        self.page_retries = page_retries if page_retries is not None else settings.fetch_page_retries
        self.retry_base_delay = retry_base_delay
        self.rate_limit_fallback = rate_limit_fallback
        self.page_delay = page_delay
        self.budget = budget or settings.fetch_account_timeout
        self._http = http or httpx.AsyncClient(
            base_url=base_url or settings.twitter_base_url,
            timeout=_REQUEST_TIMEOUT,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get_page(
        self, account: str, cursor: str, cancel: CancelToken | None, deadline: float
    ) -> dict:
        """GET one page, retrying transient failures. Raises UpstreamError.

        A retry whose wait would end past `deadline` is not attempted; the
        last error is raised instead, so a long Retry-After reads as a rate
        limit rather than a timeout.
        """
        params = {"userName": account}
        if cursor:
            params["cursor"] = cursor
        headers = {"X-API-Key": self.api_key, "Accept": "application/json"}

        last_error: UpstreamError | None = None
        for attempt in range(self.page_retries + 1):
            cancellation.check(cancel)
            try:
                resp = await self._http.get(
                    "/twitter/user/last_tweets", params=params, headers=headers
                )
            except httpx.TimeoutException as exc:
                last_error = UpstreamError(ErrorKind.TIMEOUT, str(exc) or "request timed out")
                delay = backoff_delay(attempt, self.retry_base_delay, _RETRY_MAX_DELAY)
            except httpx.TransportError as exc:
                last_error = UpstreamError(ErrorKind.TRANSIENT, str(exc) or type(exc).__name__)
                delay = backoff_delay(attempt, self.retry_base_delay, _RETRY_MAX_DELAY)
            else:
                status = resp.status_code
                if status in (401, 403):
                    raise UpstreamError(
                        ErrorKind.AUTH, f"posts API returned {status}", status=status
                    )
                if status == 429:
                    wait = _retry_after_seconds(resp)
                    last_error = UpstreamError(
                        ErrorKind.RATE_LIMIT, "posts API rate limit", status=429, retry_after=wait
                    )
                    delay = wait if wait is not None else self.rate_limit_fallback
                elif status >= 400:
                    last_error = UpstreamError(
                        ErrorKind.TRANSIENT, f"posts API error {status}", status=status
                    )
                    delay = backoff_delay(attempt, self.retry_base_delay, _RETRY_MAX_DELAY)
                else:
                    try:
                        return resp.json()
                    except ValueError:
                        last_error = UpstreamError(ErrorKind.TRANSIENT, "invalid JSON from posts API")
                        delay = backoff_delay(attempt, self.retry_base_delay, _RETRY_MAX_DELAY)

            if attempt == self.page_retries:
                break
            remaining = deadline - asyncio.get_running_loop().time()
            if delay > remaining:
                logger.warning(
                    "@%s page fetch failed (%s); retry in %.1fs exceeds the %.0fs budget",
                    account, last_error.kind.value, delay, self.budget,
                )
                break
            logger.warning(
                "@%s page fetch failed (%s) — retry %d/%d in %.1fs",
                account, last_error.kind.value, attempt + 1, self.page_retries, delay,
            )
            await cancellation.sleep(delay, cancel)

        assert last_error is not None
        if last_error.kind is not ErrorKind.RATE_LIMIT:
            last_error = UpstreamError(
                ErrorKind.TRANSIENT, last_error.detail, status=last_error.status
            )
        raise last_error

    async def fetch_posts(
        self,
        account: str,
        range_days: int,
        cancel: CancelToken | None = None,
        *,
        now: datetime | None = None,
    ) -> AccountPosts:
        """Fetch every post of `account` newer than `range_days` ago.

        Raises:
            UpstreamError: auth failure, or retries exhausted on the first page.
            ScanCancelled: the token was cancelled.
        """
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=range_days)
        deadline = asyncio.get_running_loop().time() + self.budget
        posts: list[Post] = []
        cursor = ""
        error_pages = 0
        upstream_message: str | None = None

        pages = 0
        while pages < self.max_pages:
            cancellation.check(cancel)
            if posts and asyncio.get_running_loop().time() >= deadline:
                logger.warning("@%s stopped after %d posts: fetch budget spent", account, len(posts))
                break
            try:
                data = await self._get_page(account, cursor, cancel, deadline)
            except UpstreamError as exc:
                if exc.kind is ErrorKind.AUTH or not posts:
                    raise
                logger.warning("@%s stopped after %d posts: %s", account, len(posts), exc)
                break

            if data.get("status") == "error":
                error_pages += 1
                upstream_message = data.get("message") or data.get("msg") or "upstream error"
                if error_pages >= _MAX_ERROR_PAGES:
                    logger.warning("@%s: %d consecutive error pages, giving up", account, error_pages)
                    break
                await cancellation.sleep(
                    backoff_delay(0, self.retry_base_delay, _RETRY_MAX_DELAY), cancel
                )
                continue
            error_pages = 0

            page = data.get("data") or data
            raw_posts = page.get("tweets") or []
            if not raw_posts:
                break

            hit_cutoff = False
            for raw in raw_posts:
                post = Post.from_api(raw, account)
                if post is None:
                    continue
                if post.created_at < cutoff:
                    hit_cutoff = True
                    break
                posts.append(post)

            pages += 1
            if hit_cutoff:
                break
            cursor = page.get("next_cursor") or ""
            if not page.get("has_next_page") or not cursor:
                break
            await cancellation.sleep(self.page_delay, cancel)

        error = upstream_message if not posts and upstream_message else None
        return AccountPosts(account=account, posts=posts, error=error)


# ─────────────────────────────────────────────
# Fan-out
# ─────────────────────────────────────────────

FetchFn = Callable[[str, int, CancelToken | None], Awaitable[list[Post]]]
ProgressFn = Callable[[str], None]


async def fetch_all_posts(
    fetch: FetchFn,
    accounts: Iterable[str],
    range_days: int,
    cancel: CancelToken | None = None,
    on_progress: ProgressFn | None = None,
    *,
    concurrency: int | None = None,
    account_timeout: float | None = None,
) -> list[AccountPosts]:
    """Fetch many accounts with bounded concurrency.

    Per-account failures become AccountPosts(error=...); ScanCancelled
    propagates. Results keep the input account order.
    """
    accounts = list(accounts)
    limit = max(1, concurrency or settings.fetch_concurrency)
    # the client stops itself at its budget; this only catches a request hung past it
    timeout = account_timeout or settings.fetch_account_timeout + _REQUEST_TIMEOUT
    results: list[AccountPosts | None] = [None] * len(accounts)
    done = 0

    async def _one(i: int, account: str) -> None:
        nonlocal done
        try:
            posts = await asyncio.wait_for(fetch(account, range_days, cancel), timeout)
            results[i] = AccountPosts(account=account, posts=posts)
        except ScanCancelled:
            raise
        except asyncio.TimeoutError:
            logger.warning("@%s fetch timed out after %.0fs", account, timeout)
            results[i] = AccountPosts(account=account, error="Timed out")
        except UpstreamError as exc:
            logger.warning("@%s fetch failed: %s", account, exc)
            results[i] = AccountPosts(account=account, error=exc.message)
        done += 1

    for start in range(0, len(accounts), limit):
        cancellation.check(cancel)
        chunk = accounts[start: start + limit]
        if on_progress:
            on_progress(f"Fetching {start + 1}-{start + len(chunk)} of {len(accounts)}")
        await asyncio.gather(*(_one(start + j, a) for j, a in enumerate(chunk)))

    return [r for r in results if r is not None]


def client_fetch(client: TwitterClient) -> FetchFn:
    """Adapt TwitterClient.fetch_posts to the FetchFn shape (errors → raise)."""

    async def _fetch(account: str, range_days: int, cancel: CancelToken | None) -> list[Post]:
        result = await client.fetch_posts(account, range_days, cancel)
        if result.error and not result.posts:
            raise UpstreamError(ErrorKind.TRANSIENT, result.error)
        return result.posts

    return _fetch
