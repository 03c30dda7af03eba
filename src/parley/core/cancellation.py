"""Per-call abort signal."""

from __future__ import annotations

import asyncio

from parley.errors import RequestCancelledError


class CancellationToken:
    """A one-shot abort flag shared between a caller and one orchestrator call."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError(self.reason or "Request cancelled")
