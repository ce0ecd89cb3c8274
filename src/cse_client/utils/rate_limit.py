"""Token bucket rate limiter shared by all in-flight REST calls."""

import asyncio
import time
from typing import Any, Awaitable, Callable


class RateLimiter:
    """Token bucket rate limiter for API requests."""

    def __init__(
        self,
        requests_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.requests_per_minute = requests_per_minute
        self.tokens = float(requests_per_minute)
        self._clock = clock
        self._sleep = sleep
        self.last_update = clock()
        self.lock = asyncio.Lock()
        self.total_wait_seconds = 0.0

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self.requests_per_minute / 60.0

    def _refill(self):
        now = self._clock()
        elapsed = now - self.last_update
        self.tokens = min(self.requests_per_minute, self.tokens + elapsed * self.refill_rate)
        self.last_update = now

    async def acquire(self):
        """Acquire a token, waiting for the bucket to refill if it is empty."""
        # Holding the lock while sleeping keeps waiters in FIFO order
        async with self.lock:
            self._refill()

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / self.refill_rate
                self.total_wait_seconds += wait_time
                await self._sleep(wait_time)
                self._refill()

            self.tokens = max(0.0, self.tokens - 1)
