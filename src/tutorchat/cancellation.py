"""Cooperative cancellation for in-flight requests.

A :class:`CancellationToken` is handed to ``RequestOrchestrator.send``.
Cancelling it abandons the pending network read and closes the open
turn; deltas that arrive afterwards are never applied.
"""

from __future__ import annotations

import asyncio

from tutorchat.errors import RequestCancelledError


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation.  Safe to call more than once."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError(self._reason or "request cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled}, reason={self._reason!r})"
