"""
Rate Limiter - Fixed-window call budgets per key.

Each key gets ``limit`` calls per ``window_ms``. The first call after a window
expires opens a new one. State is in-memory and owned by one RateLimiter
instance; inject the instance where it's needed.
"""

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from costledger.models.domain import RateLimitDecision


@dataclass(frozen=True)
class RateLimitPolicy:
    """Call budget for one provider."""

    limit: int
    window_ms: int


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """
    Fixed-window rate limiter.

    The clock returns seconds and must be monotonic; tests inject a fake one.
    Expired windows are pruned once the map grows past max_keys.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = 10_000,
    ) -> None:
        self._clock = clock
        self._max_keys = max_keys
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def allow(self, key: str, limit: int, window_ms: int) -> RateLimitDecision:
        """Count one call against key and report whether it may proceed."""
        if limit <= 0 or window_ms <= 0:
            raise ValueError("limit and window_ms must be positive")

        now = self._clock()
        window_seconds = window_ms / 1000

        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                if window is None and len(self._windows) >= self._max_keys:
                    self._prune(now)
                window = _Window(count=0, reset_at=now + window_seconds)
                self._windows[key] = window

            reset_in = max(0, math.ceil(window.reset_at - now))

            if window.count >= limit:
                return RateLimitDecision(allowed=False, remaining=0, reset_in_seconds=reset_in)

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=limit - window.count,
                reset_in_seconds=reset_in,
            )

    def reset(self, key: str | None = None) -> None:
        """Forget one key's window, or all of them."""
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def _prune(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for k in expired:
            del self._windows[k]

    @property
    def window_count(self) -> int:
        """Number of windows currently tracked."""
        with self._lock:
            return len(self._windows)
