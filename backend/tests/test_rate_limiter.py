"""Unit tests for the RateLimiter module."""

import pytest
from unittest.mock import Mock

from adapter.rate_limiter import (
    RateLimiter,
    RateLimitConfig,
    create_feed_limiter,
    create_summary_limiter,
)


class FakeClock:
    """Manually advanced clock for deterministic windows."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestFixedWindow:
    """Test the fixed window counter used by the summaries path."""

    def test_allows_up_to_limit(self):
        clock = FakeClock(start=0)
        limiter = create_summary_limiter(max_requests=4, window_seconds=60, clock=clock)

        decisions = [limiter.try_acquire("summaries") for _ in range(5)]

        assert [d.allowed for d in decisions] == [True, True, True, True, False]
        assert decisions[3].remaining == 0

    def test_retry_after_until_window_end(self):
        clock = FakeClock(start=0)
        limiter = create_summary_limiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.try_acquire("summaries")

        clock.advance(45)
        decision = limiter.try_acquire("summaries")

        assert decision.allowed is False
        assert decision.retry_after_seconds == pytest.approx(15)

    def test_new_window_resets_count(self):
        clock = FakeClock(start=0)
        limiter = create_summary_limiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.try_acquire("summaries")

        clock.advance(60)

        assert limiter.try_acquire("summaries").allowed is True

    def test_remaining_requests(self):
        clock = FakeClock(start=0)
        limiter = create_summary_limiter(max_requests=3, window_seconds=60, clock=clock)
        limiter.try_acquire("summaries")

        assert limiter.get_remaining_requests("summaries") == 2


class TestSlidingWindow:
    """Test the sliding window strategy used by feed sources."""

    def test_blocks_then_frees(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        limiter.configure_limit("feed", RateLimitConfig(2, 10, "sliding_window"))

        assert limiter.try_acquire("feed").allowed
        clock.advance(3)
        assert limiter.try_acquire("feed").allowed

        blocked = limiter.try_acquire("feed")
        assert blocked.allowed is False
        assert blocked.retry_after_seconds == pytest.approx(7)

        clock.advance(7)
        assert limiter.try_acquire("feed").allowed

    def test_wait_if_needed_sleeps(self):
        """Blocking acquire sleeps through the injected sleep function."""
        clock = FakeClock()
        sleep = Mock(side_effect=clock.advance)
        limiter = RateLimiter(clock=clock, sleep=sleep)
        limiter.configure_limit("feed", RateLimitConfig(1, 5, "sliding_window"))

        limiter.wait_if_needed("feed")
        limiter.wait_if_needed("feed")

        sleep.assert_called_once()
        assert sleep.call_args[0][0] == pytest.approx(5)


class TestTokenBucket:
    """Test the token bucket strategy."""

    def test_refills_over_time(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        limiter.configure_limit("bucket", RateLimitConfig(2, 2, "token_bucket"))

        assert limiter.try_acquire("bucket").allowed
        assert limiter.try_acquire("bucket").allowed
        assert limiter.try_acquire("bucket").allowed is False

        clock.advance(1)
        assert limiter.try_acquire("bucket").allowed


class TestLimiterSetup:
    """Test configuration helpers."""

    def test_unconfigured_category_allowed(self):
        assert RateLimiter().try_acquire("unknown").allowed is True

    def test_reset_clears_state(self):
        clock = FakeClock(start=0)
        limiter = create_summary_limiter(1, 60, clock=clock)
        limiter.try_acquire("summaries")

        limiter.reset("summaries")

        assert limiter.try_acquire("summaries").allowed is True

    def test_feed_limiter_categories(self):
        limiter = create_feed_limiter()

        assert set(limiter.configs) == {"bsky_appview", "x_user_lookup", "x_user_timeline"}

    def test_instances_do_not_share_state(self):
        clock = FakeClock(start=0)
        a = create_summary_limiter(1, 60, clock=clock)
        b = create_summary_limiter(1, 60, clock=clock)
        a.try_acquire("summaries")

        assert b.try_acquire("summaries").allowed is True
