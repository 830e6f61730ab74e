"""
Platform Rate Limiter

This module gates every outbound Graph API call:
- Fixed request windows per platform+endpoint key plus a daily budget per platform
- Priority queue for calls that exceed the window, drained by a polling task
- Retry wrapper with retry-after handling and exponential backoff with jitter
"""

import asyncio
import heapq
import itertools
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from insightsync.config.settings import Settings
from insightsync.models.analytics import Platform, RateLimitInfo
from insightsync.utils.error_handling import InsightSyncError, RateLimitError

MIN_BACKOFF_SECONDS = 0.1
JITTER_RATIO = 0.25
DAY_SECONDS = 86400


@dataclass
class PlatformLimit:
    """Request budget for one platform."""
    requests_per_window: int = 200
    requests_per_day: int = 4800
    window_seconds: int = 3600


@dataclass
class RetryStrategy:
    """Configuration for retry logic."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryStrategy":
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter=settings.retry_jitter,
        )


@dataclass
class RateLimitWindow:
    """Mutable counter for one platform+endpoint key."""
    count: int
    reset_time: float
    last_request_at: float


class WaitHandle:
    """Pending permission to issue one request."""

    def __init__(self, key: str, future: "asyncio.Future[bool]", queued: bool):
        self.key = key
        self.queued = queued
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until capacity is granted. Timing out releases the queued slot."""
        return await asyncio.wait_for(self._future, timeout)


class RateLimiter:
    """
    Per-platform request gate shared by every client in the process.

    Window and queue state is only mutated between awaits, so updates for a
    key are atomic on the event loop without an explicit lock. Deployments
    running several processes need one limiter per shared budget.
    """

    def __init__(
        self,
        limits: Optional[Dict[Platform, PlatformLimit]] = None,
        strategy: Optional[RetryStrategy] = None,
        min_poll_interval: float = 1.0,
        max_poll_interval: float = 60.0,
        default_retry_after: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.logger = structlog.get_logger(__name__)
        self.limits = limits or {
            Platform.INSTAGRAM: PlatformLimit(),
            Platform.FACEBOOK: PlatformLimit(),
        }
        self.strategy = strategy or RetryStrategy()
        self.min_poll_interval = min_poll_interval
        self.max_poll_interval = max_poll_interval
        self.default_retry_after = default_retry_after
        self._clock = clock
        self._sleep = sleep

        self._windows: Dict[str, RateLimitWindow] = {}
        self._daily: Dict[Platform, RateLimitWindow] = {}
        self._queues: Dict[str, List[Tuple[int, int, "asyncio.Future[bool]"]]] = {}
        self._pollers: Dict[str, "asyncio.Task[None]"] = {}
        self._sequence = itertools.count()
        self._consecutive_errors: Dict[Platform, int] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        """Build a limiter using the configured budgets and retry strategy."""
        return cls(
            limits={
                Platform.INSTAGRAM: PlatformLimit(
                    requests_per_window=settings.instagram_requests_per_hour,
                    requests_per_day=settings.instagram_requests_per_day,
                    window_seconds=settings.rate_limit_window_seconds,
                ),
                Platform.FACEBOOK: PlatformLimit(
                    requests_per_window=settings.facebook_requests_per_hour,
                    requests_per_day=settings.facebook_requests_per_day,
                    window_seconds=settings.rate_limit_window_seconds,
                ),
            },
            strategy=RetryStrategy.from_settings(settings),
            min_poll_interval=settings.rate_limit_min_poll_seconds,
            max_poll_interval=settings.rate_limit_max_poll_seconds,
            default_retry_after=settings.rate_limit_default_retry_after_seconds,
        )

    @staticmethod
    def make_key(platform: Platform, endpoint: str) -> str:
        return f"{platform.value}:{endpoint}"

    def _limit_for(self, platform: Platform) -> PlatformLimit:
        return self.limits.get(platform) or self.limits.get(Platform.INSTAGRAM) or PlatformLimit()

    def _consume(self, platform: Platform, key: str) -> bool:
        """Count one request against the window and daily budget if both allow it."""
        limit = self._limit_for(platform)
        now = self._clock()

        daily = self._daily.get(platform)
        if daily is None or now >= daily.reset_time:
            daily = RateLimitWindow(count=0, reset_time=now + DAY_SECONDS, last_request_at=now)
            self._daily[platform] = daily
        if daily.count >= limit.requests_per_day:
            return False

        window = self._windows.get(key)
        if window is None or now >= window.reset_time:
            self._windows[key] = RateLimitWindow(
                count=1,
                reset_time=now + limit.window_seconds,
                last_request_at=now,
            )
        elif window.count < limit.requests_per_window:
            window.count += 1
            window.last_request_at = now
        else:
            return False

        daily.count += 1
        daily.last_request_at = now
        return True

    def _next_poll_delay(self, platform: Platform, key: str) -> float:
        now = self._clock()
        reset_times = []
        window = self._windows.get(key)
        if window is not None:
            reset_times.append(window.reset_time)
        daily = self._daily.get(platform)
        if daily is not None and daily.count >= self._limit_for(platform).requests_per_day:
            reset_times.append(daily.reset_time)
        wait = max(reset_times) - now if reset_times else 0.0
        return min(max(wait, self.min_poll_interval), self.max_poll_interval)

    def try_acquire(self, platform: Platform, endpoint: str, priority: int = 0) -> bool:
        """
        Non-blocking fast path.

        Returns False without queueing when the window is full or earlier
        callers are already waiting for this key. ``priority`` only orders
        queued waiters, so it has no effect here; it is accepted to keep the
        signature in line with ``acquire_or_wait``.
        """
        key = self.make_key(platform, endpoint)
        if self._queues.get(key):
            return False
        return self._consume(platform, key)

    def acquire_or_wait(self, platform: Platform, endpoint: str, priority: int = 0) -> WaitHandle:
        """
        Reserve capacity for one request, queueing when the window is full.

        Args:
            platform: Target platform
            endpoint: Endpoint name used to key the window
            priority: Higher values are released first; equal priorities are FIFO

        Returns:
            Handle resolved once the request may proceed
        """
        key = self.make_key(platform, endpoint)
        future: "asyncio.Future[bool]" = asyncio.get_running_loop().create_future()

        if not self._queues.get(key) and self._consume(platform, key):
            future.set_result(True)
            return WaitHandle(key, future, queued=False)

        queue = self._queues.setdefault(key, [])
        heapq.heappush(queue, (-priority, next(self._sequence), future))
        self.logger.info(
            "Request queued by rate limiter",
            key=key,
            priority=priority,
            queue_length=len(queue),
        )
        self._ensure_poller(platform, key)
        return WaitHandle(key, future, queued=True)

    def _ensure_poller(self, platform: Platform, key: str) -> None:
        poller = self._pollers.get(key)
        if poller is None or poller.done():
            self._pollers[key] = asyncio.get_running_loop().create_task(
                self._drain_queue(platform, key)
            )

    async def _drain_queue(self, platform: Platform, key: str) -> None:
        queue = self._queues.get(key, [])
        try:
            while queue:
                while queue and queue[0][2].done():
                    heapq.heappop(queue)
                if not queue:
                    break
                if self._consume(platform, key):
                    _, _, future = heapq.heappop(queue)
                    future.set_result(True)
                    continue
                await self._sleep(self._next_poll_delay(platform, key))
        finally:
            self._pollers.pop(key, None)

    def _exhaust_window(self, platform: Platform, key: str, retry_after: float) -> None:
        now = self._clock()
        limit = self._limit_for(platform)
        self._windows[key] = RateLimitWindow(
            count=limit.requests_per_window,
            reset_time=now + retry_after,
            last_request_at=now,
        )

    def _record_error(self, platform: Platform) -> int:
        self._consecutive_errors[platform] = self._consecutive_errors.get(platform, 0) + 1
        return self._consecutive_errors[platform]

    def consecutive_errors(self, platform: Platform) -> int:
        return self._consecutive_errors.get(platform, 0)

    def calculate_backoff_delay(self, attempt: int, strategy: Optional[RetryStrategy] = None) -> float:
        """Exponential backoff for a zero-based attempt number."""
        strategy = strategy or self.strategy
        delay = min(
            strategy.base_delay * (strategy.backoff_multiplier ** attempt),
            strategy.max_delay,
        )
        if strategy.jitter:
            delay += delay * JITTER_RATIO * random.uniform(-1, 1)
            delay = max(MIN_BACKOFF_SECONDS, delay)
        return delay

    async def execute_with_retry(
        self,
        platform: Platform,
        endpoint: str,
        fn: Callable[[], Awaitable[Any]],
        strategy: Optional[RetryStrategy] = None,
        priority: int = 0,
    ) -> Any:
        """
        Run a request function under the rate limiter with retries.

        Rate-limit errors wait for the advertised retry-after (or the default)
        and transient errors back off exponentially. Errors that are not
        retryable propagate immediately; exhausting retries raises the last one.
        """
        strategy = strategy or self.strategy
        key = self.make_key(platform, endpoint)
        last_error: Optional[InsightSyncError] = None

        for attempt in range(strategy.max_retries + 1):
            await self.acquire_or_wait(platform, endpoint, priority).wait()
            try:
                result = await fn()
            except RateLimitError as error:
                last_error = error
                errors = self._record_error(platform)
                if attempt >= strategy.max_retries:
                    break
                delay = error.retry_after if error.retry_after is not None else self.default_retry_after
                self._exhaust_window(platform, key, delay)
                self.logger.warning(
                    "Rate limit hit, waiting before retry",
                    key=key,
                    attempt=attempt + 1,
                    retry_after=delay,
                    consecutive_errors=errors,
                )
                await self._sleep(delay)
            except InsightSyncError as error:
                errors = self._record_error(platform)
                if not error.retryable or attempt >= strategy.max_retries:
                    raise
                last_error = error
                delay = self.calculate_backoff_delay(attempt, strategy)
                self.logger.warning(
                    "Transient error, backing off",
                    key=key,
                    attempt=attempt + 1,
                    delay=round(delay, 3),
                    error_code=error.code,
                    consecutive_errors=errors,
                )
                await self._sleep(delay)
            else:
                self._consecutive_errors[platform] = 0
                return result

        self.logger.error("Retries exhausted", key=key, attempts=strategy.max_retries + 1)
        raise last_error

    def get_rate_limit_info(self, platform: Platform, endpoint: str) -> RateLimitInfo:
        """Report the remaining budget for one key."""
        key = self.make_key(platform, endpoint)
        limit = self._limit_for(platform)
        now = self._clock()
        window = self._windows.get(key)
        queued = sum(1 for entry in self._queues.get(key, []) if not entry[2].done())

        if window is None or now >= window.reset_time:
            return RateLimitInfo(
                key=key,
                limit=limit.requests_per_window,
                remaining=limit.requests_per_window,
                window_seconds=limit.window_seconds,
                reset_in_seconds=0.0,
                queued=queued,
            )

        return RateLimitInfo(
            key=key,
            limit=limit.requests_per_window,
            remaining=max(0, limit.requests_per_window - window.count),
            window_seconds=limit.window_seconds,
            reset_in_seconds=round(window.reset_time - now, 3),
            queued=queued,
        )

    def queued_count(self, platform: Platform, endpoint: str) -> int:
        key = self.make_key(platform, endpoint)
        return sum(1 for entry in self._queues.get(key, []) if not entry[2].done())

    def clear(self) -> None:
        """Reset all windows, budgets and error counters."""
        self._windows.clear()
        self._daily.clear()
        self._consecutive_errors.clear()

    async def aclose(self) -> None:
        """Cancel queue pollers and every pending wait handle."""
        pollers = list(self._pollers.values())
        for poller in pollers:
            poller.cancel()
        for poller in pollers:
            try:
                await poller
            except asyncio.CancelledError:
                pass
        for queue in self._queues.values():
            for _, _, future in queue:
                if not future.done():
                    future.cancel()
            queue.clear()
        self._pollers.clear()
