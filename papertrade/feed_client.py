import asyncio
import json
import random
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from .logging_setup import logger
from .rate_limit_policy import AdmissionController, RateLimitQuota


class FeedErrorKind(Enum):
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    UPSTREAM = "upstream"
    MALFORMED = "malformed"


_RETRYABLE = frozenset({FeedErrorKind.RATE_LIMITED, FeedErrorKind.NETWORK})


class FeedError(Exception):
    """Price feed failure. Only RATE_LIMITED and NETWORK are retried."""

    def __init__(self, kind: FeedErrorKind, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE

    def __repr__(self) -> str:
        return f"FeedError({self.kind.value}, {str(self)!r}, status={self.status})"


@dataclass
class FeedRequest:
    """A GET against the feed, relative to the client's base URL."""
    path: str
    params: Dict[str, Any] = field(default_factory=dict)
    context: str = ""  # human label for log lines, e.g. "price of bitcoin"


class RateLimitedFeedClient:
    """Async price feed client with admission control and jittered retries.

    Features:
    - Non-blocking async/await using aiohttp with session reuse.
    - Process-wide admission control via a shared AdmissionController
      (minimum interval + sliding window cap).
    - Exponential backoff with up to 1s of jitter for 429 responses and
      transient network errors; 429 delays are doubled.
    - Non-transient errors (other 4xx/5xx, malformed bodies) fail immediately.

    Usage:
        async with RateLimitedFeedClient(admission, base_url=...) as client:
            data = await client.fetch(FeedRequest("/simple/price", {"ids": "bitcoin"}))
    """

    BACKOFF_MULTIPLIER = 2

    def __init__(
        self,
        admission: AdmissionController,
        *,
        base_url: str = "https://api.coingecko.com/api/v3",
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 5,
        base_delay: float = 5.0,
        max_delay: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self.admission = admission
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._jitter = jitter
        self.session: Optional[aiohttp.ClientSession] = None

        self.api_calls = 0
        self.retries = 0
        self.rate_limit_hits = 0

    @classmethod
    def from_config(cls, config, **kwargs) -> "RateLimitedFeedClient":
        """Build a client and its admission controller from a FeedConfig."""
        quota = RateLimitQuota(
            max_requests_per_window=config.max_requests_per_window,
            window_seconds=config.window_seconds,
            min_interval=config.min_interval_seconds,
            safety_buffer=config.safety_buffer_seconds,
        )
        return cls(
            AdmissionController(quota),
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=config.timeout,
            max_retries=config.max_retries,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            **kwargs,
        )

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self.session:
            await self.session.close()

    @classmethod
    def backoff_delay(
        cls,
        attempt: int,
        *,
        base_delay: float,
        max_delay: float,
        rate_limited: bool,
        jitter: float = 0.0,
    ) -> float:
        """Compute the retry delay for a zero-based attempt number.

        base_delay * 2^attempt, doubled for rate-limit responses, capped at
        max_delay, plus jitter (expected in [0, 1) seconds).
        """
        delay = base_delay * (cls.BACKOFF_MULTIPLIER ** attempt)
        if rate_limited:
            delay *= 2
        return min(delay, max_delay) + jitter

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return headers

    async def fetch(self, request: FeedRequest) -> Any:
        """Fetch and decode a JSON payload, retrying transient failures.

        Raises:
            FeedError: the first non-retryable error, or the last retryable
                one once max_retries is exhausted
        """
        attempt = 0
        while True:
            await self.admission.acquire()
            self.api_calls += 1
            try:
                return await self._send(request)
            except FeedError as e:
                if e.kind is FeedErrorKind.RATE_LIMITED:
                    self.rate_limit_hits += 1
                if not e.retryable or attempt >= self.max_retries:
                    if e.retryable:
                        logger.error(
                            f"Feed retries exhausted | context={request.context or request.path} "
                            f"attempts={attempt + 1} error={e}"
                        )
                    raise

                delay = self.backoff_delay(
                    attempt,
                    base_delay=self.base_delay,
                    max_delay=self.max_delay,
                    rate_limited=e.kind is FeedErrorKind.RATE_LIMITED,
                    jitter=self._jitter(),
                )
                self.retries += 1
                logger.warning(
                    f"Feed {e.kind.value} | context={request.context or request.path} "
                    f"attempt={attempt + 1}/{self.max_retries} retry_in={delay:.1f}s"
                )
                await self._sleep(delay)
                attempt += 1

    async def _send(self, request: FeedRequest) -> Any:
        """Issue one HTTP request and classify any failure as a FeedError."""
        if not self.session:
            raise RuntimeError("Session not initialized; use 'async with' or open()")

        path = request.path if request.path.startswith("/") else f"/{request.path}"
        url = f"{self.base_url}{path}"

        try:
            async with self.session.get(
                url,
                params=request.params,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                text = await resp.text()
                if resp.status == 429:
                    raise FeedError(FeedErrorKind.RATE_LIMITED, "429: Too Many Requests", status=429)
                if not (200 <= resp.status < 300):
                    raise FeedError(FeedErrorKind.UPSTREAM, f"{resp.status}: {text[:200]}", status=resp.status)
        except asyncio.TimeoutError as e:
            raise FeedError(FeedErrorKind.NETWORK, f"Request timeout: {e}")
        except aiohttp.ClientError as e:
            raise FeedError(FeedErrorKind.NETWORK, f"Request failed: {e}")

        try:
            return json.loads(text, parse_float=Decimal)
        except ValueError as e:
            raise FeedError(FeedErrorKind.MALFORMED, f"Invalid JSON from {path}: {e}")

    def stats(self) -> dict:
        return {
            "api_calls": self.api_calls,
            "retries": self.retries,
            "rate_limit_hits": self.rate_limit_hits,
            **self.admission.stats(),
        }
