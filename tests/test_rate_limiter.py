"""Tests for the shared language model rate limiter."""

from __future__ import annotations

import asyncio

import pytest

from utils.errors import RateLimitExceeded
from utils.rate_limiter import RateLimiter


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _FakeClock:
    def __init__(self, start: float = 100.0, *, advance_on_sleep: bool = True) -> None:
        self.now = start
        self.advance_on_sleep = advance_on_sleep
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if self.advance_on_sleep:
            self.now += seconds

    async def yielding_sleep(self, seconds: float) -> None:
        """Let other tasks run, then jump the clock to the end of the sleep."""

        self.sleeps.append(seconds)
        target = self.now + seconds
        await asyncio.sleep(0)
        self.now = max(self.now, target)


@pytest.mark.anyio
async def test_first_call_is_permitted_immediately() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(3.0, clock=clock, sleep=clock.sleep)

    await limiter.acquire()

    assert clock.sleeps == []
    assert limiter.last_call == 100.0


@pytest.mark.anyio
async def test_waits_for_remaining_interval() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(3.0, clock=clock, sleep=clock.sleep)

    await limiter.acquire()
    clock.now += 1.0
    await limiter.acquire()

    assert clock.sleeps == [pytest.approx(2.0)]
    assert limiter.last_call == pytest.approx(103.0)


@pytest.mark.anyio
async def test_permitted_calls_never_closer_than_interval() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(3.0, clock=clock, sleep=clock.sleep)
    stamps: list[float] = []

    for offset in (0.0, 0.5, 0.0, 4.0, 1.0):
        clock.now += offset
        await limiter.acquire()
        stamps.append(limiter.last_call)

    gaps = [later - earlier for earlier, later in zip(stamps, stamps[1:])]
    assert all(gap >= 3.0 for gap in gaps)


@pytest.mark.anyio
async def test_concurrent_callers_are_spaced_out() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(3.0, max_attempts=3, clock=clock, sleep=clock.yielding_sleep)

    async def stamped_acquire() -> float:
        await limiter.acquire()
        return limiter.last_call

    results = await asyncio.gather(*(stamped_acquire() for _ in range(4)), return_exceptions=True)

    stamps = sorted(r for r in results if not isinstance(r, BaseException))
    failures = [r for r in results if isinstance(r, BaseException)]
    assert stamps == [pytest.approx(100.0), pytest.approx(103.0), pytest.approx(106.0)]
    assert len(failures) == 1 and isinstance(failures[0], RateLimitExceeded)
    assert all(later - earlier >= 3.0 for earlier, later in zip(stamps, stamps[1:]))

@pytest.mark.anyio
async def test_raises_after_retry_ceiling() -> None:
    clock = _FakeClock(advance_on_sleep=False)
    limiter = RateLimiter(3.0, max_attempts=3, clock=clock, sleep=clock.sleep)
    await limiter.acquire()

    with pytest.raises(RateLimitExceeded):
        await limiter.acquire()

    assert len(clock.sleeps) == 2
    assert limiter.last_call == 100.0


@pytest.mark.anyio
async def test_single_attempt_does_not_sleep() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(3.0, max_attempts=1, clock=clock, sleep=clock.sleep)
    await limiter.acquire()

    with pytest.raises(RateLimitExceeded):
        await limiter.acquire()
    assert clock.sleeps == []


def test_rejects_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        RateLimiter(-1.0)
    with pytest.raises(ValueError):
        RateLimiter(1.0, max_attempts=0)
