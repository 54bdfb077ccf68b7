"""Exponential backoff policy shared by provider calls and job retries."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, TypeVar

logger = logging.getLogger(__name__)


class RetryableResult(Protocol):
    @property
    def retryable(self) -> bool: ...

    @property
    def retry_after(self) -> float | None: ...


R = TypeVar("R", bound=RetryableResult)


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry decisions driven by typed results rather than exception types.

    ``attempt`` is always the 1-based number of attempts already made.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 4.0
    jitter: bool = True

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None and retry_after >= 0:
            return min(self.max_delay, retry_after)
        delay = min(self.max_delay, self.base_delay * (2 ** max(attempt - 1, 0)))
        if delay and self.jitter:
            delay = delay + random.uniform(0, delay / 2)
        return delay

    def should_retry(self, result: RetryableResult, attempt: int) -> bool:
        if not result.retryable or attempt >= self.max_attempts:
            return False
        # A server-requested wait beyond the cap is left to the caller.
        return result.retry_after is None or result.retry_after <= self.max_delay

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    async def run(
        self,
        call: Callable[[], Awaitable[R]],
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> R:
        """Invoke ``call`` until it yields a non-retryable result or attempts run out."""
        attempt = 0
        while True:
            attempt += 1
            result = await call()
            if not self.should_retry(result, attempt):
                return result
            delay = self.delay_for(attempt, result.retry_after)
            logger.warning(
                "Retryable provider result (attempt %s/%s), retrying in %.2fs",
                attempt,
                self.max_attempts,
                delay,
            )
            if delay:
                await sleep(delay)
