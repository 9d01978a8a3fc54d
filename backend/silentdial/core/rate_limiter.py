"""
SilentDial - Fixed-Window Rate Limiter

Counts requests per identifier in fixed time buckets. The bucket key is
``{identifier}:{now // window_ms}`` so every identifier gets a fresh counter
each window without per-key timers.

This is approximate counting for abuse mitigation: a client can burst up to
2x the limit across a bucket boundary. Callers that need hard guarantees
combine it with the call admission ceilings.

Concurrency:
    ``check()`` never suspends, so on the single event loop it is atomic with
    respect to other requests. The sweep task mutates the same map between
    awaits only.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .types import Clock, RateLimitResult, now_ms

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    count: int
    reset_time_ms: float


class RateLimiter:
    """
    In-memory fixed-window rate limiter with a periodic sweep.

    Usage:
        limiter = RateLimiter(sweep_interval_seconds=60)
        await limiter.start()

        result = limiter.check("emergency:203.0.113.7", max_requests=5, window_ms=3_600_000)
        if not result.allowed:
            ...

        await limiter.stop()
    """

    def __init__(
        self,
        sweep_interval_seconds: float = 60.0,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            sweep_interval_seconds: How often expired buckets are deleted
            clock: Source of epoch milliseconds (injectable for tests)
        """
        self._windows: dict[str, _Window] = {}
        self._clock = clock or now_ms
        self._sweep_interval = sweep_interval_seconds
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._windows)

    @property
    def is_running(self) -> bool:
        """True while the background sweep task is alive."""
        return self._sweep_task is not None and not self._sweep_task.done()

    def check(self, identifier: str, max_requests: int, window_ms: int) -> RateLimitResult:
        """
        Count one request for ``identifier`` and report whether it is allowed.

        Args:
            identifier: Arbitrary key (e.g. "emergency:<client ip>")
            max_requests: Requests allowed per window
            window_ms: Window length in milliseconds

        Returns:
            RateLimitResult with remaining count and reset time
        """
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")

        now = self._clock()
        if max_requests <= 0:
            return RateLimitResult(
                allowed=False, remaining=0, reset_time_ms=now + window_ms, limit=max_requests
            )

        key = f"{identifier}:{int(now // window_ms)}"
        current = self._windows.get(key)

        if current is None or now > current.reset_time_ms:
            reset_time = now + window_ms
            self._windows[key] = _Window(count=1, reset_time_ms=reset_time)
            return RateLimitResult(
                allowed=True,
                remaining=max_requests - 1,
                reset_time_ms=reset_time,
                limit=max_requests,
            )

        if current.count >= max_requests:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time_ms=current.reset_time_ms,
                limit=max_requests,
            )

        current.count += 1
        return RateLimitResult(
            allowed=True,
            remaining=max_requests - current.count,
            reset_time_ms=current.reset_time_ms,
            limit=max_requests,
        )

    def sweep(self) -> int:
        """Delete buckets whose reset time has passed. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, window in self._windows.items() if now > window.reset_time_ms]
        for key in expired:
            del self._windows[key]
        return len(expired)

    async def start(self) -> None:
        """Start the background sweep. Calling it again while running is a no-op."""
        if self.is_running:
            return

        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="rate-limit-sweep")
        logger.info("RateLimiter sweep started: interval=%ss", self._sweep_interval)

    async def stop(self) -> None:
        """Stop the background sweep. Safe to call when not running."""
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        logger.info("RateLimiter sweep stopped: %d buckets retained", len(self._windows))

    async def _sweep_loop(self) -> None:
        """Background task to evict expired buckets."""
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug("Swept %d expired rate limit buckets", removed)
