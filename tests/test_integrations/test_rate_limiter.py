"""
Tests for the Platform Rate Limiter

This module covers window accounting, queueing and the retry wrapper.
"""

import asyncio

import pytest

from insightsync.integrations.rate_limiter import PlatformLimit, RateLimiter, RetryStrategy
from insightsync.models.analytics import Platform
from insightsync.utils.error_handling import AuthenticationError, NetworkError, RateLimitError


class FakeTime:
    """Manual clock whose sleep advances time instead of waiting."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


def limiter_with(requests_per_window: int = 3, requests_per_day: int = 1000, **kwargs) -> RateLimiter:
    return RateLimiter(
        limits={
            Platform.INSTAGRAM: PlatformLimit(
                requests_per_window=requests_per_window,
                requests_per_day=requests_per_day,
                window_seconds=60,
            ),
        },
        min_poll_interval=0.01,
        max_poll_interval=0.01,
        **kwargs
    )


class TestWindows:
    """Test fixed-window accounting."""

    def test_try_acquire_up_to_limit(self):
        """Requests are granted until the window is full."""
        limiter = limiter_with(requests_per_window=3)

        granted = [limiter.try_acquire(Platform.INSTAGRAM, "media") for _ in range(4)]

        assert granted == [True, True, True, False]

    def test_endpoints_are_independent(self):
        """A full window on one endpoint leaves others untouched."""
        limiter = limiter_with(requests_per_window=1)

        assert limiter.try_acquire(Platform.INSTAGRAM, "media")
        assert not limiter.try_acquire(Platform.INSTAGRAM, "media")
        assert limiter.try_acquire(Platform.INSTAGRAM, "insights")

    def test_window_resets_after_expiry(self):
        fake = FakeTime()
        limiter = limiter_with(requests_per_window=1, clock=fake.clock)

        assert limiter.try_acquire(Platform.INSTAGRAM, "media")
        assert not limiter.try_acquire(Platform.INSTAGRAM, "media")

        fake.now = 61.0
        assert limiter.try_acquire(Platform.INSTAGRAM, "media")

    def test_daily_budget_spans_endpoints(self):
        """The daily budget is shared by every endpoint of a platform."""
        limiter = limiter_with(requests_per_window=10, requests_per_day=2)

        assert limiter.try_acquire(Platform.INSTAGRAM, "media")
        assert limiter.try_acquire(Platform.INSTAGRAM, "insights")
        assert not limiter.try_acquire(Platform.INSTAGRAM, "stories")

    def test_rate_limit_info(self):
        limiter = limiter_with(requests_per_window=5)
        limiter.try_acquire(Platform.INSTAGRAM, "media")
        limiter.try_acquire(Platform.INSTAGRAM, "media")

        info = limiter.get_rate_limit_info(Platform.INSTAGRAM, "media")
        fresh = limiter.get_rate_limit_info(Platform.INSTAGRAM, "insights")

        assert info.key == "INSTAGRAM:media"
        assert info.limit == 5
        assert info.remaining == 3
        assert info.reset_in_seconds > 0
        assert fresh.remaining == 5
        assert fresh.reset_in_seconds == 0.0

    def test_clear_resets_windows(self):
        limiter = limiter_with(requests_per_window=1)
        limiter.try_acquire(Platform.INSTAGRAM, "media")

        limiter.clear()

        assert limiter.try_acquire(Platform.INSTAGRAM, "media")


class TestQueueing:
    """Test acquire_or_wait queueing and release order."""

    @pytest.mark.asyncio
    async def test_acquire_without_queue_when_capacity_remains(self):
        limiter = limiter_with(requests_per_window=2)

        handle = limiter.acquire_or_wait(Platform.INSTAGRAM, "media")

        assert not handle.queued
        assert await handle.wait(timeout=1.0) is True

    @pytest.mark.asyncio
    async def test_queued_request_released_after_reset(self):
        """The request beyond the limit waits until the window resets."""
        fake = FakeTime()
        limiter = limiter_with(requests_per_window=1, clock=fake.clock)
        assert limiter.try_acquire(Platform.INSTAGRAM, "media")

        handle = limiter.acquire_or_wait(Platform.INSTAGRAM, "media")
        assert handle.queued
        await asyncio.sleep(0.05)
        assert not handle.done()
        assert limiter.queued_count(Platform.INSTAGRAM, "media") == 1

        fake.now = 61.0
        assert await handle.wait(timeout=1.0) is True
        assert limiter.queued_count(Platform.INSTAGRAM, "media") == 0

        await limiter.aclose()

    @pytest.mark.asyncio
    async def test_try_acquire_does_not_jump_the_queue(self):
        fake = FakeTime()
        limiter = limiter_with(requests_per_window=1, clock=fake.clock)
        limiter.try_acquire(Platform.INSTAGRAM, "media")
        handle = limiter.acquire_or_wait(Platform.INSTAGRAM, "media")

        fake.now = 61.0

        assert not limiter.try_acquire(Platform.INSTAGRAM, "media")
        assert not limiter.try_acquire(Platform.INSTAGRAM, "media", priority=10)
        assert await handle.wait(timeout=1.0) is True
        await limiter.aclose()

    @pytest.mark.asyncio
    async def test_higher_priority_released_first(self):
        fake = FakeTime()
        limiter = limiter_with(requests_per_window=1, clock=fake.clock)
        limiter.try_acquire(Platform.INSTAGRAM, "insights")

        low = limiter.acquire_or_wait(Platform.INSTAGRAM, "insights", priority=0)
        high = limiter.acquire_or_wait(Platform.INSTAGRAM, "insights", priority=5)

        fake.now = 61.0
        assert await high.wait(timeout=1.0) is True
        assert not low.done()

        fake.now = 122.0
        assert await low.wait(timeout=1.0) is True
        await limiter.aclose()

    @pytest.mark.asyncio
    async def test_wait_timeout_releases_slot(self):
        limiter = limiter_with(requests_per_window=1)
        limiter.try_acquire(Platform.INSTAGRAM, "media")
        handle = limiter.acquire_or_wait(Platform.INSTAGRAM, "media")

        with pytest.raises(asyncio.TimeoutError):
            await handle.wait(timeout=0.02)

        assert handle.done()
        assert limiter.queued_count(Platform.INSTAGRAM, "media") == 0
        await limiter.aclose()


class TestRetry:
    """Test execute_with_retry."""

    @pytest.fixture
    def fake(self) -> FakeTime:
        return FakeTime()

    @pytest.fixture
    def limiter(self, fake: FakeTime) -> RateLimiter:
        return limiter_with(
            requests_per_window=100,
            strategy=RetryStrategy(max_retries=3, base_delay=1.0, max_delay=30.0, jitter=False),
            default_retry_after=5.0,
            clock=fake.clock,
            sleep=fake.sleep,
        )

    @pytest.mark.asyncio
    async def test_transient_errors_then_success(self, limiter: RateLimiter, fake: FakeTime):
        """Two transient failures are retried with growing backoff."""
        calls = []

        async def request():
            calls.append(1)
            if len(calls) <= 2:
                raise NetworkError("connection reset", platform="INSTAGRAM")
            return {"ok": True}

        result = await limiter.execute_with_retry(Platform.INSTAGRAM, "media", request)

        assert result == {"ok": True}
        assert len(calls) == 3
        assert fake.sleeps == [1.0, 2.0]
        assert sum(fake.sleeps) >= 1.0 + 1.0 * 2.0
        assert limiter.consecutive_errors(Platform.INSTAGRAM) == 0

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self, limiter: RateLimiter, fake: FakeTime):
        calls = []

        async def request():
            calls.append(1)
            raise AuthenticationError("token expired", platform="INSTAGRAM")

        with pytest.raises(AuthenticationError):
            await limiter.execute_with_retry(Platform.INSTAGRAM, "media", request)

        assert len(calls) == 1
        assert fake.sleeps == []

    @pytest.mark.asyncio
    async def test_retry_after_is_honoured(self, limiter: RateLimiter, fake: FakeTime):
        calls = []

        async def request():
            calls.append(1)
            if len(calls) == 1:
                raise RateLimitError("throttled", retry_after=7.0, platform="INSTAGRAM")
            return "done"

        assert await limiter.execute_with_retry(Platform.INSTAGRAM, "insights", request) == "done"
        assert 7.0 in fake.sleeps
        assert fake.now >= 7.0

    @pytest.mark.asyncio
    async def test_rate_limit_without_hint_uses_default_wait(self, limiter: RateLimiter, fake: FakeTime):
        calls = []

        async def request():
            calls.append(1)
            if len(calls) == 1:
                raise RateLimitError("throttled", platform="INSTAGRAM")
            return "done"

        assert await limiter.execute_with_retry(Platform.INSTAGRAM, "insights", request) == "done"
        assert fake.sleeps[0] == 5.0

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_error(self, fake: FakeTime):
        limiter = limiter_with(
            requests_per_window=100,
            strategy=RetryStrategy(max_retries=2, base_delay=1.0, jitter=False),
            clock=fake.clock,
            sleep=fake.sleep,
        )
        calls = []

        async def request():
            calls.append(1)
            raise NetworkError(f"attempt {len(calls)} failed", platform="INSTAGRAM")

        with pytest.raises(NetworkError) as exc_info:
            await limiter.execute_with_retry(Platform.INSTAGRAM, "media", request)

        assert exc_info.value.message == "attempt 3 failed"
        assert len(calls) == 3
        assert fake.sleeps == [1.0, 2.0]
        assert limiter.consecutive_errors(Platform.INSTAGRAM) == 3


class TestBackoff:
    """Test calculate_backoff_delay."""

    def test_exponential_growth_is_capped(self):
        limiter = RateLimiter(strategy=RetryStrategy(base_delay=1.0, max_delay=5.0, jitter=False))

        delays = [limiter.calculate_backoff_delay(attempt) for attempt in range(5)]

        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_within_bounds(self):
        limiter = RateLimiter(strategy=RetryStrategy(base_delay=4.0, max_delay=30.0, jitter=True))

        for _ in range(50):
            delay = limiter.calculate_backoff_delay(0)
            assert 3.0 <= delay <= 5.0

    def test_jitter_never_below_floor(self):
        limiter = RateLimiter(strategy=RetryStrategy(base_delay=0.01, jitter=True))

        assert limiter.calculate_backoff_delay(0) >= 0.1
