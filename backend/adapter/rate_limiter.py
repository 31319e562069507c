"""
Rate limiter shared by feed-source adapters and the summaries request path.

Supports sliding window, fixed window and token bucket strategies per request
category. The clock and sleep functions are injectable so limits can be
exercised deterministically in tests.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Literal, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for a specific rate limit."""
    requests_per_window: int
    window_seconds: float
    strategy: Literal["sliding_window", "fixed_window", "token_bucket"] = "sliding_window"


@dataclass
class RateLimitDecision:
    """Outcome of a non-blocking acquire."""
    allowed: bool
    retry_after_seconds: float = 0.0
    remaining: int = 0


class RateLimiter:
    """
    Rate limiter keyed by category (e.g. "bsky_feed", "x_user_lookup", "summaries").

    One instance is constructed per process and passed to whoever needs it;
    there is no module-level shared state.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._clock = clock
        self._sleep = sleep

        self.configs: Dict[str, RateLimitConfig] = {}

        # category -> request timestamps inside the current sliding window
        self._sliding: Dict[str, Deque[float]] = {}
        # category -> (window_start, count)
        self._fixed: Dict[str, Tuple[float, int]] = {}
        # category -> (tokens, last_refill)
        self._buckets: Dict[str, Tuple[float, float]] = {}

    def configure_limit(self, category: str, config: RateLimitConfig) -> None:
        """Configure rate limiting for a specific category (resets its state)."""
        self.configs[category] = config
        self.reset(category)
        logger.info(
            f"Configured rate limit for {category}: "
            f"{config.requests_per_window} req/{config.window_seconds}s ({config.strategy})"
        )

    def reset(self, category: Optional[str] = None) -> None:
        """Forget recorded requests for one category, or for all of them."""
        categories = [category] if category else list(self.configs)
        for cat in categories:
            self._sliding.pop(cat, None)
            self._fixed.pop(cat, None)
            config = self.configs.get(cat)
            if config and config.strategy == "token_bucket":
                self._buckets[cat] = (float(config.requests_per_window), self._clock())
            else:
                self._buckets.pop(cat, None)

    def try_acquire(self, category: str = "default") -> RateLimitDecision:
        """
        Record a request if the category has budget left, without blocking.

        Unconfigured categories are always allowed.
        """
        config = self.configs.get(category)
        if config is None:
            logger.warning(f"No rate limit configured for category '{category}', allowing request")
            return RateLimitDecision(allowed=True, remaining=0)

        now = self._clock()
        if config.strategy == "fixed_window":
            return self._acquire_fixed_window(category, config, now)
        if config.strategy == "token_bucket":
            return self._acquire_token_bucket(category, config, now)
        return self._acquire_sliding_window(category, config, now)

    def wait_if_needed(self, category: str = "default") -> None:
        """Block until a request in this category is allowed, then record it."""
        while True:
            decision = self.try_acquire(category)
            if decision.allowed:
                return
            logger.info(f"Rate limiting {category}: waiting {decision.retry_after_seconds:.2f} seconds")
            self._sleep(decision.retry_after_seconds)

    def _acquire_sliding_window(self, category: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        window = self._sliding.setdefault(category, deque())
        while window and now - window[0] >= config.window_seconds:
            window.popleft()

        if len(window) >= config.requests_per_window:
            retry_after = config.window_seconds - (now - window[0])
            return RateLimitDecision(allowed=False, retry_after_seconds=max(0.0, retry_after))

        window.append(now)
        return RateLimitDecision(allowed=True, remaining=config.requests_per_window - len(window))

    def _acquire_fixed_window(self, category: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        window_start = (now // config.window_seconds) * config.window_seconds
        stored_start, count = self._fixed.get(category, (window_start, 0))
        if stored_start != window_start:
            count = 0

        if count >= config.requests_per_window:
            retry_after = (window_start + config.window_seconds) - now
            self._fixed[category] = (window_start, count)
            return RateLimitDecision(allowed=False, retry_after_seconds=max(0.0, retry_after))

        count += 1
        self._fixed[category] = (window_start, count)
        return RateLimitDecision(allowed=True, remaining=config.requests_per_window - count)

    def _acquire_token_bucket(self, category: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        tokens, last_refill = self._buckets.get(category, (float(config.requests_per_window), now))
        refill_rate = config.requests_per_window / config.window_seconds  # tokens per second
        tokens = min(float(config.requests_per_window), tokens + (now - last_refill) * refill_rate)

        if tokens < 1:
            self._buckets[category] = (tokens, now)
            return RateLimitDecision(allowed=False, retry_after_seconds=(1 - tokens) / refill_rate)

        tokens -= 1
        self._buckets[category] = (tokens, now)
        return RateLimitDecision(allowed=True, remaining=int(tokens))

    def get_remaining_requests(self, category: str) -> int:
        """Estimate remaining requests for a category in its current window."""
        config = self.configs.get(category)
        if config is None:
            return 0

        now = self._clock()
        if config.strategy == "sliding_window":
            window = self._sliding.get(category, deque())
            recent = [t for t in window if now - t < config.window_seconds]
            return max(0, config.requests_per_window - len(recent))

        if config.strategy == "fixed_window":
            window_start = (now // config.window_seconds) * config.window_seconds
            stored_start, count = self._fixed.get(category, (window_start, 0))
            if stored_start != window_start:
                return config.requests_per_window
            return max(0, config.requests_per_window - count)

        tokens, last_refill = self._buckets.get(category, (float(config.requests_per_window), now))
        refill_rate = config.requests_per_window / config.window_seconds
        return max(0, int(min(float(config.requests_per_window), tokens + (now - last_refill) * refill_rate)))


def create_feed_limiter() -> RateLimiter:
    """Create a rate limiter configured for the Bluesky AppView and X API."""
    limiter = RateLimiter()

    # Public AppView: ~3000 requests per 5 minutes per IP
    limiter.configure_limit("bsky_appview", RateLimitConfig(3000, 300, "sliding_window"))

    # X API v2 (app-only): user lookup 300/15min, user timeline 1500/15min
    limiter.configure_limit("x_user_lookup", RateLimitConfig(300, 900, "sliding_window"))
    limiter.configure_limit("x_user_timeline", RateLimitConfig(1500, 900, "sliding_window"))

    return limiter


def create_summary_limiter(
    max_requests: int,
    window_seconds: float,
    clock: Callable[[], float] = time.time,
) -> RateLimiter:
    """
    Create the process-wide limiter for the summaries path.

    Fixed window counter with no per-caller identity: every request contends
    for the same "summaries" budget.
    """
    limiter = RateLimiter(clock=clock)
    limiter.configure_limit("summaries", RateLimitConfig(max_requests, window_seconds, "fixed_window"))
    return limiter


__all__ = [
    "RateLimitConfig",
    "RateLimitDecision",
    "RateLimiter",
    "create_feed_limiter",
    "create_summary_limiter",
]
