from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ExtractionError, RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with a linear backoff.

    Only ``ExtractionError`` subclasses flagged ``retryable`` are retried. A rate
    limit on the very first attempt is retried after ``rate_limit_delay`` instead
    of the linear ``attempt * base_delay`` schedule.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    rate_limit_delay: float = 2.0

    def delay_for(self, attempt: int, error: BaseException) -> Optional[float]:
        """Seconds to wait before the next attempt, or None to give up."""
        if not isinstance(error, ExtractionError) or not error.retryable:
            return None
        if attempt >= self.max_attempts:
            return None
        if attempt == 1 and isinstance(error, RateLimitedError):
            return self.rate_limit_delay
        return attempt * self.base_delay

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        *,
        sleep: Sleep = asyncio.sleep,
        label: str = "operation",
    ) -> T:
        attempt = 1
        while True:
            try:
                return await operation(attempt)
            except ExtractionError as exc:
                delay = self.delay_for(attempt, exc)
                if delay is None:
                    if exc.retryable:
                        logger.warning("%s failed after %d attempt(s): %s", label, attempt, exc)
                    raise
                logger.warning(
                    "%s attempt %d/%d failed (%s); retrying in %.1fs",
                    label,
                    attempt,
                    self.max_attempts,
                    exc.kind,
                    delay,
                )
                await sleep(delay)
                attempt += 1
