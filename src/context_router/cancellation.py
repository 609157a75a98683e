"""Query-wide deadline and cancellation signal."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import async_timeout


class CancellationToken:
    """Deadline/cancel signal shared by every suspension point of one query.

    Each layer call, inference call and hop enters `scope()`, which bounds the
    awaited work by the smaller of its own timeout and the query deadline.
    `cancel()` expires every open scope immediately, so all in-flight work of
    the query raises `asyncio.TimeoutError` at its next suspension point.
    """

    def __init__(self, deadline: float | None = None) -> None:
        # Deadline is expressed in event-loop time.
        self._deadline = deadline
        self._cancelled = False
        self._scopes: set[async_timeout.Timeout] = set()

    @classmethod
    def with_timeout(cls, seconds: float | None) -> "CancellationToken":
        """Create a token expiring `seconds` from now (requires a running loop)."""
        if seconds is None:
            return cls()
        loop = asyncio.get_running_loop()
        return cls(loop.time() + seconds)

    @property
    def deadline(self) -> float | None:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self._deadline is None:
            return False
        return asyncio.get_running_loop().time() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline, `None` when unbounded."""
        if self._cancelled:
            return 0.0
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    def cancel(self) -> None:
        self._cancelled = True
        if not self._scopes:
            return
        now = asyncio.get_running_loop().time()
        for scope in list(self._scopes):
            if not scope.expired:
                scope.update(now)

    @asynccontextmanager
    async def scope(self, timeout: float | None = None) -> AsyncIterator[async_timeout.Timeout]:
        loop = asyncio.get_running_loop()
        bounds = [self._deadline] if self._deadline is not None else []
        if timeout is not None:
            bounds.append(loop.time() + timeout)
        if self._cancelled:
            bounds.append(loop.time())
        deadline = min(bounds) if bounds else None

        async with async_timeout.timeout_at(deadline) as cm:
            self._scopes.add(cm)
            try:
                yield cm
            finally:
                self._scopes.discard(cm)
