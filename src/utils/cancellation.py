"""
src/utils/cancellation.py — Cooperative cancellation for scans.

A single CancelToken is threaded through fetching, analysis and every
backoff sleep. Cancelling raises ScanCancelled at the next check point;
callers must never treat it as an ordinary failure (no retry, no error log).
"""

import asyncio


class ScanCancelled(Exception):
    """Raised when the user (or a timeout) cancels a running scan."""

    def __init__(self, reason: str = "Scan cancelled"):
        super().__init__(reason)
        self.reason = reason


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = "Scan cancelled"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if reason:
            self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ScanCancelled(self.reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, waking early (and raising) on cancellation."""
        self.raise_if_cancelled()
        if seconds > 0:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()


def check(token: CancelToken | None) -> None:
    """raise_if_cancelled that tolerates a missing token."""
    if token is not None:
        token.raise_if_cancelled()


async def sleep(seconds: float, token: CancelToken | None = None) -> None:
    if token is None:
        await asyncio.sleep(seconds)
    else:
        await token.sleep(seconds)
