"""
Rate Limiting Utilities

Token bucket limiter for provider API calls.
"""

import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Token bucket rate limiter.

    Allows burst traffic while enforcing average rate.

    Usage:
        limiter = TokenBucket(rate=10.0, capacity=20)

        async def make_request():
            await limiter.acquire()
            # Request is now allowed
            return await actual_request()
    """

    def __init__(self, rate: float = 10.0, capacity: int = 20):
        """
        Initialize token bucket.

        Args:
            rate: Tokens per second (refill rate)
            capacity: Maximum tokens (burst capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity)
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, tokens: int = 1) -> float:
        """
        Acquire tokens, waiting if necessary.

        Args:
            tokens: Number of tokens to acquire

        Returns:
            Seconds waited
        """
        async with self._lock:
            self._refill()

            if self.tokens >= tokens:
                self.tokens -= tokens
                return 0.0

            # Calculate wait time
            tokens_needed = tokens - self.tokens
            wait_time = tokens_needed / self.rate

            logger.debug(f"Rate limited, waiting {wait_time:.2f}s")
            await asyncio.sleep(wait_time)

            self._refill()
            self.tokens = max(0.0, self.tokens - tokens)

            return wait_time

    def _refill(self):
        """Refill tokens based on elapsed time"""
        now = time.monotonic()
        elapsed = now - self.last_update

        self.tokens = min(
            self.capacity,
            self.tokens + elapsed * self.rate
        )
        self.last_update = now

    def get_status(self) -> dict:
        """Get current status"""
        return {
            "tokens": self.tokens,
            "capacity": self.capacity,
            "rate": self.rate,
            "available": self.tokens >= 1
        }

