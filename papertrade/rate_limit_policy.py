"""Rate-limit policy: sliding-window admission control for the price feed."""
import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Optional

from .logging_setup import logger

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class RateLimitQuota:
    """Request quota for one upstream feed."""
    max_requests_per_window: int  # max admitted requests in the window
    window_seconds: float         # trailing window length in seconds
    min_interval: float = 0.0     # minimum gap between two admissions
    safety_buffer: float = 0.1    # extra wait once the window is full


@dataclass
class RateWindow:
    """Admitted request timestamps inside the trailing window.

    Timestamps come from a monotonic clock and are kept oldest first.
    """
    quota: RateLimitQuota
    request_times: Deque[float] = field(default_factory=deque)
    last_request: Optional[float] = None

    def prune(self, now: float) -> None:
        cutoff = now - self.quota.window_seconds
        while self.request_times and self.request_times[0] <= cutoff:
            self.request_times.popleft()

    def is_allowed(self, now: float) -> bool:
        """Check if a new request fits under the window cap."""
        self.prune(now)
        return len(self.request_times) < self.quota.max_requests_per_window

    def record_request(self, now: float) -> None:
        """Record an admitted request, successful or not."""
        self.request_times.append(now)
        self.last_request = now

    def interval_wait(self, now: float) -> float:
        """Seconds until min_interval has elapsed since the previous request."""
        if self.last_request is None:
            return 0.0
        return max(0.0, self.last_request + self.quota.min_interval - now)

    def window_wait(self, now: float) -> float:
        """Seconds until the oldest request leaves the window. 0 if allowed now."""
        if self.is_allowed(now):
            return 0.0
        oldest = self.request_times[0]
        return max(0.0, oldest + self.quota.window_seconds - now)

    def utilization(self, now: float) -> float:
        """Fraction of the window cap currently in use (0.0 - 1.0)."""
        self.prune(now)
        return len(self.request_times) / self.quota.max_requests_per_window


class AdmissionController:
    """Serialize admissions to a feed across every caller in the process.

    A single controller is shared by all coroutines using the same feed, so
    concurrent price lookups within a monitor tick cannot exceed the quota.
    The clock and sleep functions are injectable for deterministic tests.
    """

    def __init__(
        self,
        quota: RateLimitQuota,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.quota = quota
        self.window = RateWindow(quota=quota)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.window_waits = 0
        self.admitted = 0

    async def acquire(self) -> float:
        """Block until a request may proceed, record it, and return seconds waited."""
        async with self._lock:
            waited = 0.0

            delay = self.window.interval_wait(self._clock())
            if delay > 0:
                await self._sleep(delay)
                waited += delay

            while not self.window.is_allowed(self._clock()):
                delay = self.window.window_wait(self._clock()) + self.quota.safety_buffer
                self.window_waits += 1
                logger.warning(
                    f"Rate window full | in_window={len(self.window.request_times)} "
                    f"limit={self.quota.max_requests_per_window} wait={delay:.2f}s"
                )
                await self._sleep(delay)
                waited += delay

            self.window.record_request(self._clock())
            self.admitted += 1
            return waited

    def stats(self) -> dict:
        now = self._clock()
        return {
            "requests_in_window": len(self.window.request_times),
            "limit_per_window": self.quota.max_requests_per_window,
            "window_seconds": self.quota.window_seconds,
            "min_interval_seconds": self.quota.min_interval,
            "utilization_pct": round(self.window.utilization(now) * 100, 1),
            "window_waits": self.window_waits,
            "admitted": self.admitted,
        }
