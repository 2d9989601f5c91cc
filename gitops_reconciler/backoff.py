"""Exponential backoff with jitter used by retry loops."""

import random

from .config import BackoffConfig

# No public API
__all__: list[str] = []


class Backoff:
    """Tracks consecutive failures and computes the next retry delay."""

    def __init__(self, config: BackoffConfig) -> None:
        """Initialize Backoff."""
        self._config = config
        self.failures = 0

    def delay(self, attempt: int | None = None) -> float:
        """Return the delay before the given retry attempt (1 based)."""
        if attempt is None:
            attempt = max(self.failures, 1)
        delay = self._config.base * (self._config.factor ** (attempt - 1))
        delay = min(delay, self._config.cap)
        if self._config.jitter:
            jitter_range = delay * self._config.jitter
            delay += random.uniform(-jitter_range, jitter_range)
        return max(delay, 0.0)

    def failure(self) -> float:
        """Record a failure and return the delay before the next attempt."""
        self.failures += 1
        return self.delay()

    def reset(self) -> None:
        """Record a success."""
        self.failures = 0
