"""Token bucket rate limiter for per-marketplace rate limiting."""

import asyncio
import time
from typing import Dict, Optional


class TokenBucket:
    """Token bucket algorithm implementation for rate limiting.

    The bucket starts full and refills at a constant rate.
    Each request consumes one token. If no tokens are available,
    the request waits until tokens are refilled.
    """

    def __init__(self, rate: float, capacity: float):
        """Initialize token bucket.

        Args:
            rate: Tokens per second (e.g., 1.0 = 60 RPM)
            capacity: Maximum tokens in bucket (burst capacity)
        """
        self.rate = rate  # tokens per second
        self.capacity = capacity
        self.tokens = capacity
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens from the bucket, waiting if necessary.

        Args:
            tokens: Number of tokens to acquire (default 1.0)
        """
        async with self._lock:
            while True:
                self._refill()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return
                wait_time = (tokens - self.tokens) / self.rate
                await asyncio.sleep(wait_time)


class MarketplaceRateLimiter:
    """Per-marketplace rate limiter using the token bucket algorithm.

    Marketplaces penalize bursts, so every fetch (browser or relay) takes a
    token from its marketplace's bucket first.
    """

    DEFAULT_RPM = 10

    def __init__(self, limits_rpm: Optional[Dict[str, int]] = None):
        """Initialize rate limiter.

        Args:
            limits_rpm: Requests per minute keyed by marketplace name
        """
        self._limits_rpm = dict(limits_rpm or {})
        self._buckets: Dict[str, TokenBucket] = {}

    @staticmethod
    def _make_bucket(rpm: int) -> TokenBucket:
        rate = rpm / 60.0
        # Allow small bursts (10% of RPM, min 2)
        capacity = max(2.0, rpm / 10.0)
        return TokenBucket(rate=rate, capacity=capacity)

    def _get_bucket(self, marketplace: str) -> TokenBucket:
        if marketplace not in self._buckets:
            rpm = self._limits_rpm.get(marketplace, self.DEFAULT_RPM)
            self._buckets[marketplace] = self._make_bucket(rpm)
        return self._buckets[marketplace]

    async def acquire(self, marketplace: str, tokens: float = 1.0) -> None:
        """Block until the marketplace's rate limit allows another request."""
        bucket = self._get_bucket(marketplace)
        await bucket.acquire(tokens)

    def set_custom_limit(self, marketplace: str, rpm: int) -> None:
        self._limits_rpm[marketplace] = rpm
        self._buckets[marketplace] = self._make_bucket(rpm)

    def get_current_rate(self, marketplace: str) -> float:
        """Current limit for a marketplace in requests per minute."""
        return self._get_bucket(marketplace).rate * 60.0
