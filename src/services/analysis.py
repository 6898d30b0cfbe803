"""
src/services/analysis.py — Concurrency-limited LLM analysis of post batches.

A fixed number of workers pull batch indexes from a shared counter. Each
batch is streamed through the LLM, parsed, normalised and handed to the
per-batch callback (the cache writer) as soon as it finishes, so a scan that
dies half-way still leaves its finished batches cached.

Failure policy per batch:
  - rate limit / overloaded / quota / timeout / transient → retry with backoff
  - auth / billing / model not found → record, and stop pulling new batches
  - invalid request / input too large → record, siblings continue
  - ScanCancelled → stop everything and propagate
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from config import settings
from schemas import Signal
from src.integrations.anthropic_client import LLMClient, is_slow_model
from src.services.batching import Batch
from src.services.signals import coerce_signals, group_by_post, normalize_signals
from src.utils import cancellation
from src.utils.cancellation import CancelToken, ScanCancelled
from src.utils.errors import ErrorKind, UpstreamError
from src.utils.json_parser import parse_signal_array, sanitize_text

logger = logging.getLogger(__name__)

StatusFn = Callable[[str], None]
BatchDoneFn = Callable[[Batch, dict[str, list[Signal]]], Awaitable[None]]

# Base wait per error kind, seconds; doubled per attempt up to _MAX_WAIT
_RETRY_BASE = {
    ErrorKind.RATE_LIMIT: 15.0,
    ErrorKind.OVERLOADED: 15.0,
    ErrorKind.QUOTA: 45.0,
    ErrorKind.TIMEOUT: 5.0,
    ErrorKind.TRANSIENT: 3.0,
}
_MAX_WAIT = 120.0

# These fail identically for every batch; no point starting more
_STOP_KINDS = frozenset({ErrorKind.AUTH, ErrorKind.BILLING, ErrorKind.MODEL_NOT_FOUND})


@dataclass
class BatchResult:
    index: int
    signals: list[Signal]
    post_urls: list[str]
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class BatchFailure:
    index: int
    message: str
    kind: ErrorKind | None = None
    error: UpstreamError | None = None


@dataclass
class AnalysisOutcome:
    results: list[BatchResult] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)

    @property
    def signals(self) -> list[Signal]:
        out: list[Signal] = []
        for result in self.results:
            out.extend(result.signals)
        return out

    @property
    def input_tokens(self) -> int:
        return sum(r.input_tokens for r in self.results)

    @property
    def output_tokens(self) -> int:
        return sum(r.output_tokens for r in self.results)


def retry_wait(error: UpstreamError, attempt: int) -> float:
    if error.retry_after:
        return min(error.retry_after, _MAX_WAIT)
    base = _RETRY_BASE.get(error.kind, _RETRY_BASE[ErrorKind.TRANSIENT])
    return min(base * (2 ** attempt), _MAX_WAIT)


class AnalysisPool:
    def __init__(
        self,
        llm: LLMClient,
        *,
        model: str,
        prompt: str,
        on_batch_done: BatchDoneFn | None = None,
        concurrency: int | None = None,
        max_retries: int | None = None,
        max_tokens: int | None = None,
        backoff_scale: float = 1.0,
        total_posts: int = 0,
    ):
        self.llm = llm
        self.model = model
        self.prompt = prompt
        self.on_batch_done = on_batch_done
        slow = is_slow_model(model)
        self.concurrency = concurrency or (
            settings.analysis_concurrency_slow if slow else settings.analysis_concurrency
        )
        self.max_retries = settings.analysis_max_retries if max_retries is None else max_retries
        self.max_tokens = max_tokens or settings.anthropic_max_tokens
        self.timeout = settings.anthropic_timeout_slow if slow else settings.anthropic_timeout
        self.backoff_scale = backoff_scale
        self.total_posts = total_posts

    # ─────────────────────────────────────────
    # Pool
    # ─────────────────────────────────────────

    async def analyze(
        self,
        batches: list[Batch],
        cancel: CancelToken | None = None,
        on_status: StatusFn | None = None,
    ) -> AnalysisOutcome:
        """Analyse every batch; results come back ordered by batch index.

        Raises:
            ScanCancelled: the token fired; unfinished batches are abandoned.
        """
        outcome = AnalysisOutcome()
        if not batches:
            return outcome

        next_index = 0
        stop: BatchFailure | None = None
        total = len(batches)

        async def _worker() -> None:
            nonlocal next_index, stop
            while True:
                cancellation.check(cancel)
                if next_index >= total:
                    return
                batch = batches[next_index]
                next_index += 1

                if stop is not None:
                    outcome.failures.append(
                        BatchFailure(batch.index, stop.message, stop.kind, stop.error)
                    )
                    continue

                try:
                    result = await self._run_batch(batch, total, cancel, on_status)
                except ScanCancelled:
                    raise
                except UpstreamError as exc:
                    logger.warning(
                        "Batch %d/%d failed (%s): %s", batch.index + 1, total, exc.kind.value, exc.detail
                    )
                    failure = BatchFailure(batch.index, exc.message, exc.kind, exc)
                    outcome.failures.append(failure)
                    if exc.kind in _STOP_KINDS and stop is None:
                        stop = failure
                    continue

                outcome.results.append(result)
                if self.on_batch_done is not None:
                    grouped = group_by_post(result.signals, batch.post_urls)
                    try:
                        await self.on_batch_done(batch, grouped)
                    except Exception as exc:
                        logger.warning("Cache write for batch %d failed: %s", batch.index + 1, exc)

        workers = [asyncio.create_task(_worker()) for _ in range(min(self.concurrency, total))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        outcome.results.sort(key=lambda r: r.index)
        outcome.failures.sort(key=lambda f: f.index)
        return outcome

    # ─────────────────────────────────────────
    # Single batch
    # ─────────────────────────────────────────

    def _label(self, batch: Batch, total: int) -> str:
        if total > 1:
            return f"Analyzing batch {batch.index + 1}/{total}"
        if self.total_posts:
            return f"{self.total_posts} posts fetched · Analyzing"
        return "Analyzing"

    async def _run_batch(
        self,
        batch: Batch,
        total: int,
        cancel: CancelToken | None,
        on_status: StatusFn | None,
    ) -> BatchResult:
        label = self._label(batch, total)
        content = sanitize_text(batch.text)

        for attempt in range(self.max_retries + 1):
            cancellation.check(cancel)
            started = time.monotonic()
            tokens = 0

            def _emit() -> None:
                if on_status is None:
                    return
                elapsed = int(time.monotonic() - started)
                status = f"{label} · {elapsed}s"
                if tokens:
                    status += f" · {tokens / 1000:.1f}k tokens"
                on_status(status)

            def _on_tokens(count: int) -> None:
                nonlocal tokens
                tokens = count

            async def _tick() -> None:
                while True:
                    _emit()
                    await asyncio.sleep(1.0)

            ticker = asyncio.create_task(_tick())
            try:
                completion = await self.llm.complete(
                    model=self.model,
                    system=self.prompt,
                    content=content,
                    image_urls=batch.image_urls,
                    max_tokens=self.max_tokens,
                    timeout=self.timeout,
                    cancel=cancel,
                    on_progress=_on_tokens,
                )
                if not completion.text.strip():
                    raise UpstreamError(ErrorKind.TRANSIENT, "empty response")
            except UpstreamError as exc:
                ticker.cancel()
                if not exc.retryable or attempt == self.max_retries:
                    raise
                wait = retry_wait(exc, attempt) * self.backoff_scale
                if on_status is not None:
                    if exc.kind is ErrorKind.TIMEOUT:
                        on_status(f"Request timed out · Retrying ({attempt + 1}/{self.max_retries})")
                    else:
                        on_status(
                            f"Rate limited · Retry {attempt + 1}/{self.max_retries} in {int(wait)}s"
                            if exc.kind in (ErrorKind.RATE_LIMIT, ErrorKind.QUOTA, ErrorKind.OVERLOADED)
                            else f"Error · Retry {attempt + 1}/{self.max_retries} in {int(wait)}s"
                        )
                logger.info(
                    "Batch %d %s — retry %d/%d in %.1fs",
                    batch.index + 1, exc.kind.value, attempt + 1, self.max_retries, wait,
                )
                await cancellation.sleep(wait, cancel)
                continue
            finally:
                ticker.cancel()

            raw = parse_signal_array(completion.text, context=f"batch {batch.index + 1}")
            signals = normalize_signals(coerce_signals(raw, f"batch {batch.index + 1}"))
            return BatchResult(
                index=batch.index,
                signals=signals,
                post_urls=batch.post_urls,
                input_tokens=completion.input_tokens,
                output_tokens=completion.output_tokens,
            )

        raise UpstreamError(ErrorKind.TRANSIENT, "retries exhausted")  # pragma: no cover
