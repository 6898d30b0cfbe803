"""
src/integrations/anthropic_client.py — Streaming LLM completions via the Anthropic SDK.

The analysis pool talks to an `LLMClient`: anything with an async
`complete(...)` returning a Completion. AnthropicClient is the production
implementation. SDK exceptions are converted to UpstreamError here and
nowhere else.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import anthropic

from config import settings
from src.utils.cancellation import CancelToken, ScanCancelled
from src.utils.errors import ErrorKind, UpstreamError, kind_for_status

logger = logging.getLogger(__name__)

ProgressFn = Callable[[int], None]  # called with output tokens so far

_MODEL_TIERS = ("haiku", "sonnet", "opus")


@dataclass
class Completion:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str | None = None


class LLMClient(Protocol):
    async def resolve_model(self, requested: str) -> str: ...

    async def aclose(self) -> None: ...

    async def complete(
        self,
        *,
        model: str,
        system: str,
        content: str,
        image_urls: list[str],
        max_tokens: int,
        timeout: float,
        cancel: CancelToken | None = None,
        on_progress: ProgressFn | None = None,
    ) -> Completion: ...


def is_slow_model(model: str) -> bool:
    return "opus" in (model or "").lower()


def classify_anthropic_error(exc: Exception) -> UpstreamError:
    """Tag an Anthropic SDK exception."""
    if isinstance(exc, anthropic.APITimeoutError):
        return UpstreamError(ErrorKind.TIMEOUT, "request timed out")
    if isinstance(exc, anthropic.APIConnectionError):
        return UpstreamError(ErrorKind.TRANSIENT, str(exc) or "connection error")
    if isinstance(exc, anthropic.APIStatusError):
        body = f"{exc.message} {exc.body}" if exc.body else str(exc.message)
        retry_after = None
        header = exc.response.headers.get("retry-after") if exc.response is not None else None
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return UpstreamError(
            kind_for_status(exc.status_code, body),
            str(exc.message)[:200],
            status=exc.status_code,
            retry_after=retry_after,
        )
    return UpstreamError(ErrorKind.TRANSIENT, str(exc)[:200])


class AnthropicClient:
    """Thin wrapper around anthropic.AsyncAnthropic's streaming API."""

    def __init__(self, api_key: str | None = None, *, sdk: anthropic.AsyncAnthropic | None = None):
        self._claude = sdk or anthropic.AsyncAnthropic(
            api_key=api_key or settings.anthropic_api_key,
            max_retries=0,  # retries are handled by the analysis pool
        )
        self._models: list = []
        self._models_at = 0.0

    async def aclose(self) -> None:
        await self._claude.close()

    # ─────────────────────────────────────────
    # Model resolution
    # ─────────────────────────────────────────

    async def resolve_model(self, requested: str) -> str:
        """Return `requested` if the provider lists it, else the newest model
        of the same tier. Listing failures fall back to `requested`."""
        now = time.monotonic()
        if not self._models or now - self._models_at > settings.model_list_ttl:
            try:
                page = await self._claude.models.list(limit=100)
                self._models = list(page.data)
                self._models_at = now
            except anthropic.APIError as exc:
                logger.warning("Model list unavailable (%s); using %s", exc, requested)
                return requested

        ids = {m.id for m in self._models}
        if requested in ids:
            return requested
        tier = next((t for t in _MODEL_TIERS if t in requested.lower()), None)
        if tier is None:
            return requested
        candidates = sorted(
            (m for m in self._models if tier in m.id),
            key=lambda m: m.created_at,
            reverse=True,
        )
        if not candidates:
            return requested
        logger.info("Model %s unavailable; using %s", requested, candidates[0].id)
        return candidates[0].id

    # ─────────────────────────────────────────
    # Completion
    # ─────────────────────────────────────────

    @staticmethod
    def build_user_content(content: str, image_urls: list[str]) -> list[dict]:
        parts: list[dict] = [
            {"type": "image", "source": {"type": "url", "url": url}} for url in image_urls
        ]
        parts.append({"type": "text", "text": content})
        return parts

    async def _stream(
        self,
        model: str,
        system: str,
        content: str,
        image_urls: list[str],
        max_tokens: int,
        on_progress: ProgressFn | None,
    ) -> Completion:
        chunks: list[str] = []
        approx_tokens = 0
        async with self._claude.messages.stream(
            model=model,
            max_tokens=max_tokens,
            system=[{"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}],
            messages=[{"role": "user", "content": self.build_user_content(content, image_urls)}],
        ) as stream:
            async for text in stream.text_stream:
                chunks.append(text)
                approx_tokens += max(1, len(text) // 4)
                if on_progress:
                    on_progress(approx_tokens)
            final = await stream.get_final_message()

        return Completion(
            text="".join(chunks),
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
            stop_reason=final.stop_reason,
        )

    async def complete(
        self,
        *,
        model: str,
        system: str,
        content: str,
        image_urls: list[str],
        max_tokens: int,
        timeout: float,
        cancel: CancelToken | None = None,
        on_progress: ProgressFn | None = None,
    ) -> Completion:
        """Stream one completion.

        Raises:
            UpstreamError: any provider failure, including the timeout.
            ScanCancelled: the token fired while streaming.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()

        task = asyncio.ensure_future(
            self._stream(model, system, content, image_urls, max_tokens, on_progress)
        )
        waiters = {task}
        cancel_waiter = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task not in done:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, anthropic.APIError):
                pass
            if cancel is not None and cancel.cancelled:
                raise ScanCancelled(cancel.reason)
            raise UpstreamError(ErrorKind.TIMEOUT, f"no response after {timeout:.0f}s")

        try:
            return task.result()
        except anthropic.APIError as exc:
            raise classify_anthropic_error(exc) from exc
