"""
Retry decorator and circuit breaker for network operations.

Provides automatic retry with exponential backoff for transient failures
and a breaker that stops hammering a provider that keeps failing.
"""

import asyncio
import logging
import time
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def async_retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
):
    """
    Retry async function with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries (seconds)
        backoff: Multiplier for delay on each retry
        exceptions: Tuple of exception types to retry on; anything else propagates immediately
        sleep: Awaitable sleep (injectable for tests)

    Example:
        @async_retry(max_attempts=3, delay=0.5)
        async def fetch_data():
            ...
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts - 1:
                        logger.error(
                            f"{func.__name__} failed after {max_attempts} attempts",
                            extra={
                                "function": func.__name__,
                                "attempts": max_attempts,
                                "error": str(e)
                            }
                        )
                        raise

                    current_delay = delay * (backoff ** attempt)

                    logger.warning(
                        f"{func.__name__} failed, retrying in {current_delay:.1f}s",
                        extra={
                            "function": func.__name__,
                            "attempt": attempt + 1,
                            "max_attempts": max_attempts,
                            "delay": current_delay,
                            "error": str(e)
                        }
                    )

                    await sleep(current_delay)

            raise RuntimeError("async_retry requires max_attempts >= 1")

        return wrapper
    return decorator


class CircuitBreaker:
    """
    Circuit breaker to prevent cascading failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Failures exceeded threshold, requests blocked
    - HALF_OPEN: Testing if service recovered

    Usage:
        cb = CircuitBreaker(name="Jupiter", failure_threshold=5)

        if cb.can_execute():
            try:
                result = await fetch()
                cb.record_success()
            except httpx.HTTPError:
                cb.record_failure()
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        name: str = "default",
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening
            recovery_timeout: Seconds before attempting recovery
            name: Circuit breaker name (for logging)
            clock: Time source
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._clock = clock

        self.failures = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"

    def record_success(self):
        """Record successful request"""
        self.failures = 0
        self.state = "CLOSED"

    def record_failure(self):
        """Record failed request"""
        self.failures += 1
        self.last_failure_time = self._clock()

        if self.failures >= self.failure_threshold and self.state != "OPEN":
            self.state = "OPEN"
            logger.warning(f"Circuit breaker '{self.name}' OPENED after {self.failures} failures")

    def can_execute(self) -> bool:
        """Check if request can be executed"""
        if self.state == "CLOSED":
            return True

        if self.state == "OPEN":
            elapsed = self._clock() - self.last_failure_time
            if elapsed >= self.recovery_timeout:
                self.state = "HALF_OPEN"
                logger.info(f"Circuit breaker '{self.name}' entering HALF_OPEN state")
                return True
            return False

        # HALF_OPEN - allow one request to test
        return True

    def get_status(self) -> dict:
        """Get circuit breaker status"""
        return {
            "name": self.name,
            "state": self.state,
            "failures": self.failures,
            "threshold": self.failure_threshold,
            "can_execute": self.can_execute()
        }
