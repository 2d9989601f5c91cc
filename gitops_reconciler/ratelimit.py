"""Token bucket rate limiter shared by every writer to the managed environment."""

import asyncio
import logging
import time

_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


class RateLimiter:
    """Token bucket rate limiter.

    Tokens are refilled continuously at `qps` per second up to `burst`. Each
    write consumes one token; callers wait when the bucket is empty.
    """

    def __init__(self, qps: float, burst: int) -> None:
        """Initialize the RateLimiter."""
        if qps <= 0:
            raise ValueError("qps must be positive")
        self._qps = qps
        self._burst = max(burst, 1)
        self._tokens = float(self._burst)
        self._last = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last
        self._tokens = min(float(self._burst), self._tokens + elapsed * self._qps)
        self._last = now

    @property
    def tokens(self) -> float:
        """Tokens currently available."""
        self._refill()
        return self._tokens

    async def acquire(self) -> None:
        """Wait until a token is available and consume it."""
        async with self._lock:
            self._refill()
            if self._tokens < 1.0:
                wait = (1.0 - self._tokens) / self._qps
                _LOGGER.debug("Rate limited, waiting %0.3fs for a write token", wait)
                await asyncio.sleep(wait)
                self._refill()
            self._tokens -= 1.0
