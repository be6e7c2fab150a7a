"""RetryPolicy: exponential backoff with jitter, plus an async retry helper."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from couchstream.core.config import RetryConfig
from couchstream.errors import RetryExhaustedError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Configurable retry with exponential backoff and jitter."""

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        jitter: bool = True,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_attempts: Maximum number of attempts (including the first).
            base_delay: Initial delay in seconds before the first retry.
            max_delay: Cap on delay in seconds.
            jitter: If True, multiply delays by a random factor in [0.5, 1.5].
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter=config.jitter,
        )

    def should_retry(self, attempt: int) -> bool:
        """Return True if another attempt is allowed (attempt is 1-based)."""
        return 1 <= attempt < self.max_attempts

    def delay_for_attempt(self, attempt: int) -> float:
        """Return delay in seconds after the given 1-based attempt.

        Uses exponential backoff: base_delay * 2^(attempt-1), capped by max_delay.
        """
        if attempt < 1:
            return 0.0
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())  # noqa: S311
        return float(max(0.0, delay))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    describe: str,
    retry_on: tuple[type[BaseException], ...] = (TransientError,),
) -> T:
    """Await ``operation()`` until it succeeds or the policy gives up.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates unchanged on first occurrence. Exhaustion raises
    ``RetryExhaustedError`` chained to the last failure.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as e:
            if not policy.should_retry(attempt):
                raise RetryExhaustedError(describe, attempt, e) from e
            delay = policy.delay_for_attempt(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                describe,
                attempt,
                policy.max_attempts,
                delay,
                e,
            )
            await asyncio.sleep(delay)
