"""
Tests for rate_limiter.py.

Covers:
  - Under the limit: calls are granted
  - At the limit: first N calls granted, (N+1)th denied
  - Concurrent burst of N+1 calls: exactly one denial
  - Sliding window: old calls expire, new ones are granted again
  - Per-provider isolation and per-provider limit overrides
  - retry_after(), stats(), reset()
"""
from __future__ import annotations

import threading
import time

import pytest

from rate_limiter import RateLimiter

LIMIT = 5
WINDOW = 60.0


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter(default_limit=LIMIT, window_secs=WINDOW, limits={})


@pytest.fixture
def clock(monkeypatch):
    """Replace time.monotonic with a controllable clock."""
    fake_now = [1000.0]   # mutable so tests can advance it
    monkeypatch.setattr(time, "monotonic", lambda: fake_now[0])
    return fake_now


class TestTryAcquire:
    def test_first_call_granted(self, limiter):
        assert limiter.try_acquire("openai") is True

    def test_up_to_limit_granted(self, limiter):
        for _ in range(LIMIT):
            assert limiter.try_acquire("openai") is True

    def test_over_limit_denied(self, limiter):
        for _ in range(LIMIT):
            limiter.try_acquire("openai")
        assert limiter.try_acquire("openai") is False

    def test_denied_call_is_not_recorded(self, limiter):
        for _ in range(LIMIT + 3):
            limiter.try_acquire("openai")
        assert limiter.stats("openai")["calls_in_window"] == LIMIT

    def test_providers_independent(self, limiter):
        for _ in range(LIMIT):
            limiter.try_acquire("openai")
        assert limiter.try_acquire("anthropic") is True

    def test_per_provider_override(self):
        limiter = RateLimiter(default_limit=LIMIT, window_secs=WINDOW, limits={"gemini": 2})
        assert limiter.limit_for("gemini") == 2
        assert limiter.limit_for("openai") == LIMIT
        assert limiter.try_acquire("gemini") is True
        assert limiter.try_acquire("gemini") is True
        assert limiter.try_acquire("gemini") is False


class TestConcurrentBurst:
    def test_burst_of_n_plus_one_denies_exactly_one(self):
        n = 20
        limiter = RateLimiter(default_limit=n, window_secs=WINDOW, limits={})
        barrier = threading.Barrier(n + 1)
        results: list[bool] = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            granted = limiter.try_acquire("openai")
            with results_lock:
                results.append(granted)

        threads = [threading.Thread(target=worker) for _ in range(n + 1)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == n + 1
        assert results.count(True) == n
        assert results.count(False) == 1


class TestSlidingWindow:
    def test_window_expires_old_calls(self, limiter, clock):
        for _ in range(LIMIT):
            limiter.try_acquire("openai")
        assert limiter.try_acquire("openai") is False

        # Advance time past the window
        clock[0] += WINDOW + 1.0
        assert limiter.try_acquire("openai") is True

    def test_partial_expiry(self, limiter, clock):
        limiter.try_acquire("openai")            # t=1000
        clock[0] += 30
        for _ in range(LIMIT - 1):
            limiter.try_acquire("openai")        # t=1030
        assert limiter.try_acquire("openai") is False

        clock[0] += 31                           # first call now 61s old
        assert limiter.try_acquire("openai") is True
        assert limiter.try_acquire("openai") is False

    def test_window_stays_bounded(self, limiter):
        for _ in range(LIMIT * 3):
            limiter.try_acquire("openai")
        assert limiter.stats("openai")["calls_in_window"] <= LIMIT


class TestRetryAfter:
    def test_zero_when_slot_free(self, limiter):
        assert limiter.retry_after("openai") == 0.0

    def test_time_until_oldest_call_leaves(self, limiter, clock):
        for _ in range(LIMIT):
            limiter.try_acquire("openai")
        clock[0] += 20
        assert limiter.retry_after("openai") == pytest.approx(WINDOW - 20)


class TestStatsAndReset:
    def test_stats(self, limiter):
        limiter.try_acquire("openai")
        limiter.try_acquire("openai")
        stats = limiter.stats("openai")
        assert stats["calls_in_window"] == 2
        assert stats["remaining"] == LIMIT - 2
        assert stats["limit"] == LIMIT

    def test_all_stats_lists_seen_providers(self, limiter):
        limiter.try_acquire("openai")
        limiter.try_acquire("anthropic")
        names = [s["provider_id"] for s in limiter.all_stats()]
        assert names == ["anthropic", "openai"]

    def test_reset_single_provider(self, limiter):
        for _ in range(LIMIT):
            limiter.try_acquire("openai")
            limiter.try_acquire("anthropic")
        limiter.reset("openai")
        assert limiter.try_acquire("openai") is True
        assert limiter.try_acquire("anthropic") is False

    def test_reset_all(self, limiter):
        for _ in range(LIMIT):
            limiter.try_acquire("openai")
        limiter.reset()
        assert limiter.try_acquire("openai") is True
