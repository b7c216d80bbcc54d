"""Minimum-interval limiter shared by every call to the language model."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from utils.errors import RateLimitExceeded
from utils.logging_config import get_logger

logger = get_logger("rate_limiter")

DEFAULT_MIN_INTERVAL_SECONDS = 3.0
DEFAULT_MAX_ATTEMPTS = 3


class RateLimiter:
    """Space out permitted calls by at least ``min_interval`` seconds.

    A caller that arrives too early sleeps for the remaining time and checks
    again. The lock only covers the check-and-stamp step, so waiting callers
    compete for the next slot and a caller that loses ``max_attempts`` times
    gets :class:`RateLimitExceeded` instead of waiting forever.
    """

    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.min_interval = float(min_interval)
        self.max_attempts = max_attempts
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: Optional[float] = None

    @property
    def last_call(self) -> Optional[float]:
        return self._last_call

    async def acquire(self) -> None:
        for attempt in range(1, self.max_attempts + 1):
            async with self._lock:
                now = self._clock()
                if self._last_call is None or now - self._last_call >= self.min_interval:
                    self._last_call = now
                    return
                remaining = self.min_interval - (now - self._last_call)
            logger.debug(
                "Rate limit active, waiting %.2f seconds (attempt %s/%s)",
                remaining,
                attempt,
                self.max_attempts,
            )
            if attempt == self.max_attempts:
                break
            await self._sleep(remaining)

        logger.warning("Rate limit exceeded after %s attempts", self.max_attempts)
        raise RateLimitExceeded(
            f"No call slot available after {self.max_attempts} attempts"
        )
