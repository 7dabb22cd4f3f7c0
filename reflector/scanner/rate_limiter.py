"""
Per-address rate limiting using the token bucket algorithm
Gates every request before any probing happens
"""

import asyncio
import threading
import time
from typing import Callable, Dict, Optional

import structlog

logger = structlog.get_logger()


class TokenBucket:
    """
    Token bucket implementation for rate limiting
    Allows bursts up to capacity while maintaining the average rate
    """

    def __init__(
        self,
        rate: float,
        capacity: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            rate: Tokens per second
            capacity: Maximum bucket size (defaults to rate)
            clock: Monotonic time source
        """
        self.rate = rate
        self.capacity = capacity or rate
        self.tokens = self.capacity
        self.clock = clock
        self.last_update = clock()
        self.lock = threading.Lock()

    def try_consume(self, tokens: float = 1.0) -> bool:
        """Take tokens if available, never waits"""
        with self.lock:
            now = self.clock()
            elapsed = max(0.0, now - self.last_update)

            # Add tokens based on elapsed time
            self.tokens = min(
                self.capacity,
                self.tokens + elapsed * self.rate
            )
            self.last_update = now

            if self.tokens >= tokens:
                self.tokens -= tokens
                return True
            return False


class IPRateLimiter:
    """
    One token bucket per source address

    Buckets are created lazily and the whole map is discarded on every
    reset cycle, which refills every bucket. This bounds memory at the
    cost of forgetting state for active addresses once per cycle.
    """

    def __init__(
        self,
        requests_per_minute: int,
        clock: Callable[[], float] = time.monotonic
    ):
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        self.requests_per_minute = requests_per_minute
        self.clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        # Bucket creation and reset are exclusive; lookups are lock-free
        self._lock = threading.Lock()
        self.logger = logger.bind(component="rate_limiter")

    def _get_bucket(self, address: str) -> TokenBucket:
        bucket = self._buckets.get(address)
        if bucket is not None:
            return bucket

        with self._lock:
            bucket = self._buckets.get(address)
            if bucket is None:
                bucket = TokenBucket(
                    rate=self.requests_per_minute / 60.0,
                    capacity=float(self.requests_per_minute),
                    clock=self.clock
                )
                self._buckets[address] = bucket
            return bucket

    def allow(self, address: str) -> bool:
        """Spend one token for this address"""
        allowed = self._get_bucket(address).try_consume()
        if not allowed:
            self.logger.debug("Rate limit hit")
        return allowed

    def reset(self) -> int:
        """Discard every bucket, returns how many were dropped"""
        with self._lock:
            dropped = len(self._buckets)
            self._buckets = {}
        self.logger.info("Rate limiter reset", discarded=dropped)
        return dropped

    def tracked_addresses(self) -> int:
        return len(self._buckets)

    async def run_reset_cycle(self, interval: float):
        """Reset the limiter every interval seconds until cancelled"""
        while True:
            await asyncio.sleep(interval)
            self.reset()
