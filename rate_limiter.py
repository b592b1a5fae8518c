"""
rate_limiter.py — per-provider call budget over a sliding time window.

Each provider gets a deque of time.monotonic() timestamps. try_acquire()
evicts timestamps older than the window and admits the call only while the
window holds fewer than `limit` entries. The eviction, the check and the
append all happen under one lock, so concurrent callers can never be
admitted past the limit. The lock is never held across an await.

Denial is immediate; there is no queueing at this layer.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Optional

import config

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(default_limit=50, window_secs=60)
        if not limiter.try_acquire("openai"):
            raise RateLimited("openai", limiter.retry_after("openai"))
    """

    def __init__(
        self,
        default_limit: Optional[int] = None,
        window_secs: Optional[float] = None,
        limits: Optional[dict[str, int]] = None,
    ) -> None:
        self.default_limit = default_limit if default_limit is not None else config.RATE_LIMIT_PER_MINUTE
        self.window_secs = window_secs if window_secs is not None else config.RATE_LIMIT_WINDOW_SECS
        self._limits: dict[str, int] = dict(
            limits if limits is not None else config.PROVIDER_RATE_LIMITS
        )
        self._windows: dict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()

    def limit_for(self, provider_id: str) -> int:
        return self._limits.get(provider_id, self.default_limit)

    def _evict(self, window: deque, now: float) -> None:
        while window and now - window[0] > self.window_secs:
            window.popleft()

    def try_acquire(self, provider_id: str) -> bool:
        """Record a call and return True, or return False if the budget is spent."""
        with self._lock:
            now = time.monotonic()
            window = self._windows[provider_id]
            self._evict(window, now)
            if len(window) >= self.limit_for(provider_id):
                granted = False
            else:
                window.append(now)
                granted = True

        if not granted:
            logger.warning(
                "[%s] Rate limit hit (%d calls / %.0fs)",
                provider_id, self.limit_for(provider_id), self.window_secs,
            )
        return granted

    def retry_after(self, provider_id: str) -> float:
        """Seconds until the oldest recorded call leaves the window (0 if a slot is free)."""
        with self._lock:
            now = time.monotonic()
            window = self._windows[provider_id]
            self._evict(window, now)
            if len(window) < self.limit_for(provider_id):
                return 0.0
            if not window:
                return self.window_secs
            return max(window[0] + self.window_secs - now, 0.0)

    def stats(self, provider_id: str) -> dict:
        with self._lock:
            window = self._windows[provider_id]
            self._evict(window, time.monotonic())
            used = len(window)
        limit = self.limit_for(provider_id)
        return {
            "provider_id": provider_id,
            "calls_in_window": used,
            "limit": limit,
            "remaining": max(limit - used, 0),
            "window_secs": self.window_secs,
        }

    def all_stats(self) -> list[dict]:
        with self._lock:
            names = sorted(set(self._windows) | set(self._limits))
        return [self.stats(name) for name in names]

    def reset(self, provider_id: Optional[str] = None) -> None:
        with self._lock:
            if provider_id is None:
                self._windows.clear()
            else:
                self._windows.pop(provider_id, None)
