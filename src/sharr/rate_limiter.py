"""
Client-side rate limiting for ticketing system calls.

Jira Cloud and ServiceNow both throttle API clients and answer with HTTP
429 once a client exceeds its allowance. A token bucket in front of the
notifier keeps a burst of remediation results (a batch dispatch) from
tripping those limits.

Usage:
    from sharr.rate_limiter import RateLimitConfig, TokenBucketRateLimiter

    limiter = TokenBucketRateLimiter(RateLimitConfig(requests_per_minute=60))
    if not limiter.acquire(timeout=10.0):
        raise NotifyError("Rate limit timeout", reason="rate_limit")
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from sharr.logging_config import get_logger, log_with_context

logger = get_logger(__name__)


@dataclass
class RateLimitConfig:
    """
    Configuration for rate limiting.

    Attributes:
        requests_per_minute: Sustained request rate
        burst_size: Tokens available at once
    """

    requests_per_minute: int
    burst_size: int = 5


class TokenBucketRateLimiter:
    """
    Thread-safe token bucket.

    Tokens refill at ``requests_per_minute / 60`` per second up to
    ``burst_size``. Each call consumes one token.

    Attributes:
        rate: Tokens added per second
        capacity: Maximum tokens in the bucket
        tokens: Current token count
    """

    def __init__(
        self,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if config.requests_per_minute <= 0 or config.burst_size <= 0:
            raise ValueError("requests_per_minute and burst_size must be positive")
        self.rate: float = config.requests_per_minute / 60.0
        self.capacity: float = float(config.burst_size)
        self.tokens: float = float(config.burst_size)
        self._clock: Callable[[], float] = clock
        self._sleep: Callable[[float], None] = sleep
        self.last_update: float = clock()
        self._lock: threading.Lock = threading.Lock()

    def acquire(self, timeout: float = 30.0) -> bool:
        """
        Take a token, waiting up to ``timeout`` seconds for one.

        Returns:
            True if a token was acquired, False on timeout
        """
        deadline = self._clock() + timeout

        while True:
            with self._lock:
                self._refill()
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return True
                wait_time = (1.0 - self.tokens) / self.rate

            if self._clock() + wait_time > deadline:
                log_with_context(
                    logger,
                    "warning",
                    "Ticketing rate limit acquire timeout",
                    timeout=timeout,
                    wait_time=wait_time,
                )
                return False

            self._sleep(min(wait_time, 0.1))

    def try_acquire(self) -> bool:
        """Take a token if one is available right now."""
        with self._lock:
            self._refill()
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return True
            return False

    def _refill(self) -> None:
        # Caller holds the lock
        now = self._clock()
        elapsed = now - self.last_update
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_update = now
