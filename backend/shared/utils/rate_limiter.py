"""
Per-host request pacing with a token bucket and 429 backoff.
Safe for a single asyncio event loop.
"""
from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from typing import Optional
from urllib.parse import urlparse

from shared.utils.logging import get_logger

logger = get_logger(__name__)


class TokenBucket:
    """
    In-process token bucket.
    Refills at rpm / 60 tokens per second; max burst = burst.
    """

    def __init__(self, rpm: int, burst: int) -> None:
        self._rpm = max(1, rpm)
        self._burst = max(1, burst)
        self._tokens = float(self._burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> bool:
        """Consume one token if available. Returns True if allowed, False if rate limited."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_refill
            self._tokens = min(self._burst, self._tokens + elapsed * (self._rpm / 60.0))
            self._last_refill = now
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    async def wait_until_available(self, timeout_s: Optional[float] = None) -> bool:
        """Wait until a token is available or timeout. Returns True if token acquired."""
        deadline = (time.monotonic() + timeout_s) if timeout_s else None
        while True:
            if await self.acquire():
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            await asyncio.sleep(60.0 / self._rpm)


class HostRateLimiter:
    """Per-host token buckets plus a backoff window after a 429."""

    def __init__(self, rpm: int, burst: int | None = None, backoff_on_429_s: float = 30.0) -> None:
        self._rpm = rpm
        self._burst = burst or max(1, rpm // 6)
        self._backoff_on_429_s = backoff_on_429_s
        self._buckets: dict[str, TokenBucket] = defaultdict(
            lambda: TokenBucket(rpm=self._rpm, burst=self._burst)
        )
        self._backoff_until: dict[str, float] = {}

    @staticmethod
    def _host(url: str) -> str:
        return urlparse(url).netloc or "unknown"

    async def wait_for_slot(self, url: str, timeout_s: Optional[float] = None) -> bool:
        """Wait until a request to url is allowed. Returns False only on timeout."""
        host = self._host(url)
        wait = self._backoff_until.get(host, 0.0) - time.monotonic()
        if wait > 0:
            if timeout_s is not None and wait > timeout_s:
                return False
            await asyncio.sleep(wait)
        return await self._buckets[host].wait_until_available(timeout_s)

    def record_429(self, url: str, retry_after_s: float | None = None) -> None:
        """Record a rate limit response; back off this host."""
        host = self._host(url)
        backoff = retry_after_s if retry_after_s is not None else self._backoff_on_429_s
        self._backoff_until[host] = time.monotonic() + backoff
        logger.warning("rate_limit_backoff", host=host, backoff_s=backoff)
