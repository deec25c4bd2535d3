"""Per-client sliding-window admission control.

Each client key owns one RateLimitEntry. A call either resets an expired
window (count=1, admitted), increments a live one while under the limit, or
is rejected. Updates for one key are serialized; different keys never wait
on each other.

The entry store is injectable: InMemoryRateLimitStore for a single process,
MongoRateLimitStore (limits/mongo_store.py) for multi-instance deployments.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Protocol

from context_gateway.errors import RateLimitExceeded
from context_gateway.models import RateLimitEntry

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
DEFAULT_WINDOW_SECONDS = 300.0  # 5 min


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    client_key: str
    count: int
    limit: int
    window_start: float
    retry_after: float = 0.0


class RateLimitStore(Protocol):
    async def hit(
        self, client_key: str, now: float, window_seconds: float, limit: int,
    ) -> RateLimitDecision: ...

    async def sweep(self, older_than: float) -> int: ...

    async def reset(self) -> None: ...


class InMemoryRateLimitStore:
    """Process-local entries with one asyncio.Lock per key."""

    def __init__(self) -> None:
        self._entries: dict[str, RateLimitEntry] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def hit(
        self, client_key: str, now: float, window_seconds: float, limit: int,
    ) -> RateLimitDecision:
        async with self._locks[client_key]:
            entry = self._entries.get(client_key)
            if entry is None or now > entry.window_start + window_seconds:
                entry = RateLimitEntry(client_key=client_key, window_start=now, count=1)
                self._entries[client_key] = entry
                return RateLimitDecision(True, client_key, 1, limit, now)

            if entry.count < limit:
                entry.count += 1
                return RateLimitDecision(True, client_key, entry.count, limit, entry.window_start)

            retry_after = entry.window_start + window_seconds - now
            return RateLimitDecision(
                False, client_key, entry.count, limit, entry.window_start, retry_after,
            )

    def get(self, client_key: str) -> RateLimitEntry | None:
        entry = self._entries.get(client_key)
        if entry is None:
            return None
        return RateLimitEntry(entry.client_key, entry.window_start, entry.count)

    async def sweep(self, older_than: float) -> int:
        """Drop entries whose window started before older_than."""
        stale = [k for k, e in self._entries.items() if e.window_start < older_than]
        removed = 0
        for key in stale:
            lock = self._locks[key]
            async with lock:
                entry = self._entries.get(key)
                if entry is not None and entry.window_start < older_than:
                    del self._entries[key]
                    removed += 1
            if not lock.locked():
                self._locks.pop(key, None)
        return removed

    async def reset(self) -> None:
        self._entries.clear()
        self._locks.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RateLimiter:
    """Windowed limiter. limit and window are configuration, not constants.

    Usage:
        limiter = RateLimiter(limit=20, window_seconds=300)
        if not await limiter.admit("10.0.0.1"):
            ...reject...
    """

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.limit = limit
        self.window_seconds = window_seconds
        self.store = store or InMemoryRateLimitStore()
        self._clock = clock
        self._sweep_task: asyncio.Task | None = None

    async def check(self, client_key: str) -> RateLimitDecision:
        decision = await self.store.hit(
            client_key or "unknown", self._clock(), self.window_seconds, self.limit,
        )
        if not decision.allowed:
            logger.info(
                "RATE_LIMITED | client=%s | count=%d/%d | retry_after=%.1fs",
                decision.client_key, decision.count, decision.limit, decision.retry_after,
            )
        return decision

    async def admit(self, client_key: str) -> bool:
        return (await self.check(client_key)).allowed

    async def enforce(self, client_key: str) -> RateLimitDecision:
        """Like check() but raises RateLimitExceeded on rejection."""
        decision = await self.check(client_key)
        if not decision.allowed:
            raise RateLimitExceeded(
                decision.client_key, retry_after=decision.retry_after, limit=decision.limit,
            )
        return decision

    async def sweep(self, grace_seconds: float | None = None) -> int:
        """Housekeeping: remove entries expired for longer than grace_seconds."""
        grace = self.window_seconds if grace_seconds is None else grace_seconds
        older_than = self._clock() - self.window_seconds - grace
        removed = await self.store.sweep(older_than)
        if removed:
            logger.info("Rate limiter sweep removed %d stale entries", removed)
        return removed

    async def reset(self) -> None:
        await self.store.reset()

    def start_sweeper(self, interval_seconds: float) -> None:
        if self._sweep_task and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval_seconds))

    async def stop_sweeper(self) -> None:
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.warning("Rate limiter sweep failed: %s", e)
