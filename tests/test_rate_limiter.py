"""
Tests for RateLimiter.

Fixed windows driven by an injected clock.
"""

import pytest

from costledger.services.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestFixedWindow:
    """Tests for per-key fixed windows."""

    def test_fortnox_quota_25_per_5_seconds(self, clock: FakeClock) -> None:
        limiter = RateLimiter(clock=clock)

        decisions = [limiter.allow("fortnox:abc", 25, 5000) for _ in range(25)]
        assert all(d.allowed for d in decisions)
        assert decisions[0].remaining == 24
        assert decisions[-1].remaining == 0

        clock.advance(2.2)
        rejected = limiter.allow("fortnox:abc", 25, 5000)
        assert rejected.allowed is False
        assert rejected.remaining == 0
        assert 0 < rejected.reset_in_seconds <= 5

        clock.advance(3.0)
        again = limiter.allow("fortnox:abc", 25, 5000)
        assert again.allowed is True
        assert again.remaining == 24

    def test_keys_are_independent(self, clock: FakeClock) -> None:
        limiter = RateLimiter(clock=clock)

        assert limiter.allow("hubspot:a", 1, 10_000).allowed
        assert not limiter.allow("hubspot:a", 1, 10_000).allowed
        assert limiter.allow("hubspot:b", 1, 10_000).allowed

    def test_reset_in_seconds_rounds_up(self, clock: FakeClock) -> None:
        limiter = RateLimiter(clock=clock)

        limiter.allow("microsoft365:a", 1, 600_000)
        clock.advance(0.5)
        decision = limiter.allow("microsoft365:a", 1, 600_000)

        assert decision.reset_in_seconds == 600

    def test_rejected_calls_do_not_extend_window(self, clock: FakeClock) -> None:
        limiter = RateLimiter(clock=clock)

        limiter.allow("k", 1, 1000)
        for _ in range(10):
            limiter.allow("k", 1, 1000)
        clock.advance(1.0)

        assert limiter.allow("k", 1, 1000).allowed

    def test_invalid_policy_rejected(self, clock: FakeClock) -> None:
        limiter = RateLimiter(clock=clock)
        with pytest.raises(ValueError):
            limiter.allow("k", 0, 1000)


class TestPruning:
    """Stale windows are dropped once the map is full."""

    def test_expired_windows_pruned(self, clock: FakeClock) -> None:
        limiter = RateLimiter(clock=clock, max_keys=2)

        limiter.allow("a", 5, 1000)
        limiter.allow("b", 5, 1000)
        clock.advance(2)
        limiter.allow("c", 5, 1000)

        assert limiter.window_count == 1

    def test_live_windows_survive_pruning(self, clock: FakeClock) -> None:
        limiter = RateLimiter(clock=clock, max_keys=2)

        limiter.allow("a", 1, 10_000)
        limiter.allow("b", 1, 10_000)
        limiter.allow("c", 1, 10_000)

        assert not limiter.allow("a", 1, 10_000).allowed
        assert limiter.window_count == 3

    def test_empty_limiter_is_truthy(self, clock: FakeClock) -> None:
        limiter = RateLimiter(clock=clock)

        assert limiter.window_count == 0
        assert (limiter or None) is limiter

    def test_reset_clears_key(self, clock: FakeClock) -> None:
        limiter = RateLimiter(clock=clock)

        limiter.allow("a", 1, 10_000)
        limiter.reset("a")

        assert limiter.allow("a", 1, 10_000).allowed
