"""
Per-provider request windows.

Each provider gets a counter and a window start. Once the counter reaches
the provider's maximum inside a live window, further requests are refused
until the window elapses; the window resets lazily on the first check
after expiry.

Usage:
    limiter = RateLimiter(max_requests=100, window_seconds=60)
    if limiter.is_allowed("groq"):
        ...  # counted against groq's current window
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from relay.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


@dataclass
class RateLimitWindow:
    count: int
    window_start: float


class RateLimiter:
    """
    Fixed-size window counter per provider id.

    Thread-safe for single-threaded async (asyncio): no method awaits, so
    check-and-increment cannot interleave.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        *,
        limits: Optional[dict[str, int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._default_max = max_requests
        self._window = window_seconds
        self._limits = dict(limits or {})
        self._clock = clock
        self._windows: dict[str, RateLimitWindow] = {}

    def max_for(self, provider_id: str) -> int:
        return self._limits.get(provider_id, self._default_max)

    def set_limit(self, provider_id: str, max_requests: int) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        self._limits[provider_id] = max_requests

    def _live_window(self, provider_id: str) -> Optional[RateLimitWindow]:
        """Current window, dropping it first if it has expired."""
        window = self._windows.get(provider_id)
        if window is None:
            return None
        if self._clock() - window.window_start >= self._window:
            del self._windows[provider_id]
            return None
        return window

    # --- Checks ---

    def is_limited(self, provider_id: str) -> bool:
        """Read-only: would the next request to this provider be refused?"""
        window = self._live_window(provider_id)
        return window is not None and window.count >= self.max_for(provider_id)

    def is_allowed(self, provider_id: str) -> bool:
        """Admit and count one request. False once the window is full."""
        window = self._live_window(provider_id)
        if window is None:
            self._windows[provider_id] = RateLimitWindow(count=1, window_start=self._clock())
            return True

        if window.count >= self.max_for(provider_id):
            return False

        window.count += 1
        return True

    def acquire(self, provider_id: str) -> None:
        """Like is_allowed(), but raises RateLimitedError when refused."""
        if not self.is_allowed(provider_id):
            retry_after = self.reset_time(provider_id) or 0.0
            logger.info(
                "provider_rate_limited",
                extra={"provider": provider_id, "retry_after_s": round(retry_after, 1)},
            )
            raise RateLimitedError(
                f"Rate limit reached for {provider_id}",
                provider_id=provider_id,
                retry_after_seconds=retry_after,
            )

    # --- Inspection ---

    def remaining(self, provider_id: str) -> int:
        window = self._live_window(provider_id)
        limit = self.max_for(provider_id)
        if window is None:
            return limit
        return max(0, limit - window.count)

    def reset_time(self, provider_id: str) -> Optional[float]:
        """Seconds until the current window expires, or None if no window."""
        window = self._live_window(provider_id)
        if window is None:
            return None
        return max(0.0, window.window_start + self._window - self._clock())

    def reset(self, provider_id: str) -> None:
        self._windows.pop(provider_id, None)

    def cleanup(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        now = self._clock()
        expired = [
            pid for pid, w in self._windows.items()
            if now - w.window_start >= self._window
        ]
        for pid in expired:
            del self._windows[pid]
        return len(expired)

    def get_stats(self) -> dict[str, dict[str, float]]:
        return {
            pid: {
                "count": w.count,
                "max": self.max_for(pid),
                "resets_in_s": round(max(0.0, w.window_start + self._window - self._clock()), 1),
            }
            for pid, w in self._windows.items()
        }
