import asyncio
from decimal import Decimal

import aiohttp
import pytest

from papertrade.feed_client import FeedError, FeedErrorKind, FeedRequest, RateLimitedFeedClient
from papertrade.rate_limit_policy import AdmissionController, RateLimitQuota


class FakeResponse:
    def __init__(self, status: int, text: str):
        self.status = status
        self._text = text

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


def make_client(clock, responses, **kwargs):
    quota = RateLimitQuota(max_requests_per_window=10, window_seconds=60, min_interval=0)
    admission = AdmissionController(quota, clock=clock, sleep=clock.sleep)
    client = RateLimitedFeedClient(admission, sleep=clock.sleep, jitter=lambda: 0.0, **kwargs)
    client.session = FakeSession(responses)
    return client


SOL_PAYLOAD = '{"solana": {"usd": 142.37, "usd_24h_change": -1.5}}'


def test_backoff_delay_doubles_and_caps():
    delays = [
        RateLimitedFeedClient.backoff_delay(a, base_delay=5, max_delay=60, rate_limited=False)
        for a in range(5)
    ]
    assert delays == [5, 10, 20, 40, 60]


def test_backoff_delay_rate_limited_is_doubled_with_jitter():
    assert RateLimitedFeedClient.backoff_delay(0, base_delay=5, max_delay=60, rate_limited=True) == 10
    assert RateLimitedFeedClient.backoff_delay(2, base_delay=5, max_delay=60, rate_limited=True) == 40
    assert RateLimitedFeedClient.backoff_delay(3, base_delay=5, max_delay=60, rate_limited=True, jitter=0.7) == 60.7


def test_retryable_kinds():
    assert FeedError(FeedErrorKind.RATE_LIMITED, "x").retryable
    assert FeedError(FeedErrorKind.NETWORK, "x").retryable
    assert not FeedError(FeedErrorKind.UPSTREAM, "x").retryable
    assert not FeedError(FeedErrorKind.MALFORMED, "x").retryable


@pytest.mark.asyncio
async def test_rate_limited_three_times_then_success(clock):
    responses = [FakeResponse(429, "slow down")] * 3 + [FakeResponse(200, SOL_PAYLOAD)]
    client = make_client(clock, responses)

    data = await client.fetch(FeedRequest("/simple/price", {"ids": "solana"}))

    assert data["solana"]["usd"] == Decimal("142.37")
    assert client.api_calls == 4
    assert client.retries == 3
    assert client.rate_limit_hits == 3
    assert clock.sleeps == [10, 20, 40]


@pytest.mark.asyncio
async def test_network_error_retried(clock):
    responses = [asyncio.TimeoutError(), aiohttp.ClientConnectionError("reset"), FakeResponse(200, SOL_PAYLOAD)]
    client = make_client(clock, responses)

    await client.fetch(FeedRequest("/simple/price"))

    assert client.retries == 2
    assert client.rate_limit_hits == 0
    assert clock.sleeps == [5, 10]


@pytest.mark.asyncio
async def test_upstream_error_not_retried(clock):
    client = make_client(clock, [FakeResponse(503, "unavailable"), FakeResponse(200, SOL_PAYLOAD)])

    with pytest.raises(FeedError) as exc:
        await client.fetch(FeedRequest("/simple/price"))

    assert exc.value.kind is FeedErrorKind.UPSTREAM
    assert exc.value.status == 503
    assert client.api_calls == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_malformed_json_not_retried(clock):
    client = make_client(clock, [FakeResponse(200, "<html>nope</html>")])

    with pytest.raises(FeedError) as exc:
        await client.fetch(FeedRequest("/simple/price"))

    assert exc.value.kind is FeedErrorKind.MALFORMED
    assert client.retries == 0


@pytest.mark.asyncio
async def test_retries_exhausted_raises_last_error(clock):
    client = make_client(clock, [FakeResponse(429, "")] * 3, max_retries=2)

    with pytest.raises(FeedError) as exc:
        await client.fetch(FeedRequest("/simple/price"))

    assert exc.value.kind is FeedErrorKind.RATE_LIMITED
    assert client.api_calls == 3
    assert client.retries == 2


@pytest.mark.asyncio
async def test_every_attempt_is_admitted(clock):
    client = make_client(clock, [FakeResponse(429, "")] * 2 + [FakeResponse(200, "{}")])

    await client.fetch(FeedRequest("/simple/price"))

    assert client.admission.admitted == 3
    assert client.stats()["requests_in_window"] == 3


@pytest.mark.asyncio
async def test_api_key_header_and_url(clock):
    client = make_client(clock, [FakeResponse(200, "{}")], base_url="https://feed.example/api/", api_key="k")

    await client.fetch(FeedRequest("simple/price", {"ids": "bitcoin"}))

    url, kwargs = client.session.calls[0]
    assert url == "https://feed.example/api/simple/price"
    assert kwargs["headers"]["x-cg-demo-api-key"] == "k"
    assert kwargs["params"] == {"ids": "bitcoin"}


@pytest.mark.asyncio
async def test_fetch_without_session_raises(clock):
    quota = RateLimitQuota(max_requests_per_window=10, window_seconds=60)
    client = RateLimitedFeedClient(AdmissionController(quota, clock=clock, sleep=clock.sleep))

    with pytest.raises(RuntimeError):
        await client.fetch(FeedRequest("/ping"))
