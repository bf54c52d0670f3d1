import asyncio

import pytest

from papertrade.rate_limit_policy import AdmissionController, RateLimitQuota, RateWindow


def test_rate_window_allow_within_limit():
    window = RateWindow(quota=RateLimitQuota(max_requests_per_window=3, window_seconds=60))

    for t in (0.0, 1.0, 2.0):
        assert window.is_allowed(t)
        window.record_request(t)
    assert not window.is_allowed(3.0)


def test_rate_window_slides():
    window = RateWindow(quota=RateLimitQuota(max_requests_per_window=2, window_seconds=10))
    window.record_request(0.0)
    window.record_request(5.0)

    assert not window.is_allowed(9.0)
    assert window.window_wait(9.0) == pytest.approx(1.0)
    # oldest timestamp falls out exactly at the window edge
    assert window.is_allowed(10.0)
    assert len(window.request_times) == 1


def test_interval_wait_respects_min_interval():
    window = RateWindow(quota=RateLimitQuota(max_requests_per_window=10, window_seconds=60, min_interval=4))
    assert window.interval_wait(0.0) == 0.0
    window.record_request(100.0)
    assert window.interval_wait(101.0) == pytest.approx(3.0)
    assert window.interval_wait(105.0) == 0.0


def test_utilization():
    window = RateWindow(quota=RateLimitQuota(max_requests_per_window=4, window_seconds=60))
    window.record_request(0.0)
    assert window.utilization(1.0) == pytest.approx(0.25)


@pytest.mark.asyncio
async def test_acquire_enforces_min_interval(clock):
    quota = RateLimitQuota(max_requests_per_window=10, window_seconds=60, min_interval=4)
    admission = AdmissionController(quota, clock=clock, sleep=clock.sleep)

    assert await admission.acquire() == 0.0
    waited = await admission.acquire()

    assert waited == pytest.approx(4.0)
    assert admission.admitted == 2


@pytest.mark.asyncio
async def test_acquire_waits_for_window_with_safety_buffer(clock):
    quota = RateLimitQuota(max_requests_per_window=2, window_seconds=60, safety_buffer=0.1)
    admission = AdmissionController(quota, clock=clock, sleep=clock.sleep)
    start = clock.now

    await admission.acquire()
    await admission.acquire()
    waited = await admission.acquire()

    assert waited == pytest.approx(60.1)
    assert admission.window_waits == 1
    assert clock.now - start == pytest.approx(60.1)


@pytest.mark.asyncio
async def test_concurrent_acquires_never_exceed_window_cap(clock):
    quota = RateLimitQuota(max_requests_per_window=10, window_seconds=60, min_interval=0)
    admission = AdmissionController(quota, clock=clock, sleep=clock.sleep)
    admitted_at = []

    async def caller():
        await admission.acquire()
        admitted_at.append(clock.now)

    await asyncio.gather(*(caller() for _ in range(25)))

    assert len(admitted_at) == 25
    # no trailing 60s window ever holds more than 10 admissions
    for t in admitted_at:
        in_window = [x for x in admitted_at if t - 60 < x <= t]
        assert len(in_window) <= 10


@pytest.mark.asyncio
async def test_stats_report_utilization(clock):
    quota = RateLimitQuota(max_requests_per_window=10, window_seconds=60)
    admission = AdmissionController(quota, clock=clock, sleep=clock.sleep)
    for _ in range(3):
        await admission.acquire()

    stats = admission.stats()
    assert stats["requests_in_window"] == 3
    assert stats["utilization_pct"] == 30.0
    assert stats["admitted"] == 3
