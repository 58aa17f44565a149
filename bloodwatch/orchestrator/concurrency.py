"""Per-source locking and cooperative cancellation for runs."""

from __future__ import annotations

import asyncio
from collections import defaultdict


class SourceLockRegistry:
    """One asyncio lock per source.

    Two runs touching the same source never process it at the same time; the
    second waits for the first attempt to finish. Locks are scoped to the
    registry instance, so orchestrators that share a registry share exclusion.
    """

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock_for(self, source_id: str) -> asyncio.Lock:
        return self._locks[source_id]

    def is_locked(self, source_id: str) -> bool:
        lock = self._locks.get(source_id)
        return lock is not None and lock.locked()


class CancellationToken:
    """Signals a running orchestration to stop starting new attempts.

    Attempts already in flight finish; sources not yet started are recorded
    as cancelled.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason
