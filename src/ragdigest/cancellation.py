"""Cooperative cancellation shared by every stage of a pipeline run."""
from __future__ import annotations

import asyncio

from .errors import PipelineCancelledError


class CancellationToken:
    """A one-way flag that in-flight calls and sleeps can wait on."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelledError(f"pipeline cancelled: {self.reason}")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for *seconds* unless cancelled first.

        Returns ``True`` when the sleep was cut short by cancellation.
        """

        if self._event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


async def cancellable_sleep(seconds: float, token: CancellationToken | None) -> bool:
    if token is not None:
        return await token.sleep(seconds)
    if seconds > 0:
        await asyncio.sleep(seconds)
    return False


__all__ = ["CancellationToken", "cancellable_sleep"]
