"""Retry utilities with exponential backoff."""

import asyncio
import random
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ..config.settings import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar('T')

SleepFunc = Callable[[float], Awaitable[Any]]


class BackoffPolicy:
    """
    Bounded exponential backoff with additive jitter.

    The base delay for retry ``n`` (0-based) is
    ``min(initial * multiplier**n, max_delay)``. Jitter adds up to 25% of
    that base, still capped at ``max_delay``, so delays never shrink below the
    deterministic schedule.
    """

    JITTER_RATIO = 0.25

    def __init__(
        self,
        max_attempts: int = 5,
        initial_delay: float = 0.5,
        max_delay: float = 30.0,
        backoff_factor: float = 2.0,
        jitter: bool = True,
        rng: Optional[random.Random] = None
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: RetryConfig, rng: Optional[random.Random] = None) -> "BackoffPolicy":
        return cls(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_backoff_seconds,
            max_delay=config.max_backoff_seconds,
            backoff_factor=config.backoff_multiplier,
            jitter=config.jitter,
            rng=rng
        )

    @property
    def max_retries(self) -> int:
        return self.max_attempts - 1

    def base_delay(self, retry: int) -> float:
        return min(self.initial_delay * (self.backoff_factor ** retry), self.max_delay)

    def compute_delay(self, retry: int, floor: Optional[float] = None) -> float:
        """Delay before retry number ``retry`` (0-based)."""
        delay = self.base_delay(retry)
        if floor is not None:
            delay = max(delay, min(floor, self.max_delay))
        if self.jitter:
            delay += self._rng.uniform(0, delay * self.JITTER_RATIO)
        return min(delay, self.max_delay)


async def exponential_backoff(
    func: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: SleepFunc = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None
) -> T:
    """
    Execute an async function with exponential backoff retry logic.

    Exceptions exposing a ``retry_after`` attribute raise the delay floor for
    the following attempt. Cancellation is never retried.

    Args:
        func: Async function to execute
        policy: Backoff schedule and attempt bound
        exceptions: Tuple of exceptions to catch and retry on
        sleep: Awaitable sleep, replaceable for tests
        on_retry: Callback invoked with (attempt, error, delay) before sleeping

    Returns:
        Result of the function call

    Raises:
        The last exception encountered if all retries fail
    """
    for attempt in range(policy.max_attempts):
        try:
            return await func()
        except exceptions as e:
            if attempt == policy.max_attempts - 1:
                logger.error(f"Function failed after {policy.max_attempts} attempts: {e}")
                raise

            delay = policy.compute_delay(attempt, floor=getattr(e, 'retry_after', None))

            logger.warning(
                f"Attempt {attempt + 1}/{policy.max_attempts} failed: {e}. "
                f"Retrying in {delay:.2f} seconds..."
            )
            if on_retry:
                on_retry(attempt + 1, e, delay)

            await sleep(delay)

    raise RuntimeError("exponential_backoff requires max_attempts >= 1")
