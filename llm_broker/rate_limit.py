"""Per-account rate limiting using an in-process fixed window counter.

Algorithm: one counter per key, reset when its 60 second window has elapsed.
A background cleanup task evicts counters whose window expired long ago so
the map does not grow with every account ever seen.

Thread safety: asyncio.Lock per key ensures no races in a single process.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from llm_broker.errors import RateLimited

log = structlog.get_logger(__name__)


@dataclass
class _WindowCounter:
    """Window state for one key."""

    window_start: float
    count: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RateLimiter:
    """In-process per-key rate limiter.

    One instance is shared across the application (created in lifespan).
    Not shared across processes.
    """

    def __init__(
        self,
        requests_per_minute: int,
        *,
        window_seconds: float = 60.0,
        cleanup_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rpm = requests_per_minute
        self._window_seconds = window_seconds
        self._cleanup_interval = cleanup_interval
        self._clock = clock
        self._counters: dict[str, _WindowCounter] = {}
        self._task: asyncio.Task[None] | None = None

    async def check(self, key: str) -> None:
        """Count one request for ``key``.

        Does nothing when the limit is 0 (unlimited).

        Raises:
            RateLimited: ``key`` exceeded its requests for the current window
        """
        if self._rpm <= 0:
            return

        counter = self._counters.get(key)
        if counter is None:
            counter = self._counters.setdefault(key, _WindowCounter(window_start=self._clock()))

        async with counter.lock:
            now = self._clock()
            elapsed = now - counter.window_start

            if elapsed >= self._window_seconds:
                counter.window_start = now
                counter.count = 0
                elapsed = 0.0

            counter.count += 1

            if counter.count > self._rpm:
                retry_after = int(self._window_seconds - elapsed) + 1
                log.warning(
                    "rate_limit.exceeded",
                    key=key,
                    count=counter.count,
                    limit=self._rpm,
                    retry_after=retry_after,
                )
                raise RateLimited(key, self._rpm, retry_after_seconds=retry_after)

    def reset(self, key: str) -> None:
        """Reset the counter for a key (useful in tests)."""
        self._counters.pop(key, None)

    def cleanup(self) -> int:
        """Evict counters whose window has expired. Returns how many were removed."""
        now = self._clock()
        expired = [
            key
            for key, counter in self._counters.items()
            if now - counter.window_start >= self._window_seconds and not counter.lock.locked()
        ]
        for key in expired:
            del self._counters[key]
        if expired:
            log.debug("rate_limit.cleanup", evicted=len(expired), remaining=len(self._counters))
        return len(expired)

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._cleanup_loop(), name="rate-limit-cleanup")
        log.info("rate_limit.started", rpm=self._rpm, cleanup_interval_s=self._cleanup_interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        log.info("rate_limit.stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            self.cleanup()
