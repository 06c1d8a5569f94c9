"""Retry strategies for failed runs and remote calls.

The engine re-queues a failed run with a delay computed here; the remote
service client retries individual requests in-process with
``execute_with_retry``.

Usage:
    strategy = RetryStrategy.exponential(max_retries=3, base_delay=1.0, max_delay=60.0)
    if strategy.should_retry(run.retry_count, error):
        delay = strategy.compute_delay(run.retry_count + 1)
"""

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from core.exceptions import WorkflowEngineException

logger = structlog.get_logger(__name__)


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    NONE = "none"


def is_retryable(error: Optional[BaseException]) -> bool:
    """Engine errors carry their own flag; anything else is assumed transient."""
    if error is None:
        return True
    if isinstance(error, WorkflowEngineException):
        return error.retryable
    return True


@dataclass
class RetryStrategy:
    """How many times to retry, and how long to wait before each retry."""
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: bool = False
    jitter_range: float = 0.5

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries, fail immediately."""
        return cls(policy=RetryPolicy.NONE, max_retries=0)

    @classmethod
    def fixed(cls, max_retries: int = 3, delay: float = 5.0) -> 'RetryStrategy':
        """Fixed delay between retries."""
        return cls(
            policy=RetryPolicy.FIXED,
            max_retries=max_retries,
            base_delay=delay,
            jitter=False,
        )

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: bool = False,
    ) -> 'RetryStrategy':
        """Exponential backoff: base_delay * 2^(attempt-1), capped."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )

    @classmethod
    def from_settings(cls, settings, max_retries: Optional[int] = None) -> 'RetryStrategy':
        """Run-level strategy from engine settings."""
        return cls.exponential(
            max_retries=settings.MAX_RETRIES if max_retries is None else max_retries,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            jitter=settings.RETRY_JITTER,
        )

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay before retry number ``attempt`` (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        if self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (max(attempt, 1) - 1))
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        return round(delay, 3)

    def should_retry(self, retries_so_far: int, error: Optional[BaseException] = None) -> bool:
        """True if another attempt is allowed after ``retries_so_far`` retries."""
        if self.policy == RetryPolicy.NONE:
            return False
        if retries_so_far >= self.max_retries:
            return False
        return is_retryable(error)

    def delays(self) -> list[float]:
        """Pre-computed delays for every retry this strategy allows."""
        if self.policy == RetryPolicy.NONE:
            return []
        return [self.compute_delay(i) for i in range(1, self.max_retries + 1)]


async def execute_with_retry(
    func: Callable[..., Awaitable],
    strategy: RetryStrategy,
    *args,
    on_retry: Optional[Callable] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs,
):
    """Execute an async callable with the given retry strategy.

    Args:
        func: Async callable to execute.
        strategy: RetryStrategy instance.
        on_retry: Optional callback(attempt, error, delay) called before each retry.
        sleep: Awaitable sleep, usually ``clock.sleep``.

    Returns:
        The result of func(*args, **kwargs).

    Raises:
        The last exception once retries are exhausted or the error is not retryable.
    """
    retries = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not strategy.should_retry(retries, e):
                raise

            retries += 1
            delay = strategy.compute_delay(retries)
            logger.info("Retrying call", attempt=retries, max_retries=strategy.max_retries,
                        delay=delay, error=str(e))

            if on_retry:
                result = on_retry(retries, e, delay)
                if asyncio.iscoroutine(result):
                    await result

            await sleep(delay)
