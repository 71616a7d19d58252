"""Token-bucket rate limiting shared by every in-flight request."""

import asyncio
import logging
import random
import time
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class TokenBucketLimiter:
    """Async token bucket: ``rate`` permits per second, bursts up to ``capacity``.

    The bucket starts full and refills continuously. Waiters are served in
    arrival order. After a permit is taken the caller sleeps a random jitter
    of up to ``max_jitter`` seconds, so that many workers released together
    do not hit the API in the same instant.
    """

    def __init__(
        self,
        rate: float,
        capacity: Optional[float] = None,
        max_jitter: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ):
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        if max_jitter < 0:
            raise ValueError(f"max_jitter cannot be negative, got {max_jitter}")

        self.rate = float(rate)
        self.capacity = float(capacity) if capacity is not None else float(rate)
        if self.capacity < 1:
            raise ValueError(f"capacity must allow at least one permit, got {self.capacity}")
        self.max_jitter = max_jitter
        self._clock = clock
        self._tokens = self.capacity
        self._updated_at = clock()
        self._lock = asyncio.Lock()
        self.acquired = 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated_at
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated_at = now

    @property
    def available(self) -> float:
        """Permits currently in the bucket."""
        self._refill()
        return self._tokens

    async def acquire(self) -> None:
        """Block until one permit is available, then apply jitter."""
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    break
                wait_time = (1 - self._tokens) / self.rate
                logger.debug("Rate limit reached, waiting %.3fs for a permit", wait_time)
                await asyncio.sleep(wait_time)
            self.acquired += 1

        if self.max_jitter:
            await asyncio.sleep(random.uniform(0, self.max_jitter))

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None
