import asyncio
from types import SimpleNamespace

import pytest

from bundlebot.solana.dispatcher import RateLimitedDispatcher, RateLimitState
from bundlebot.solana.errors import RateLimitExceededError
from bundlebot.utils.rate_limit_utils import is_rate_limit_error, retry_after_seconds
from tests.conftest import make_profile


class HttpStatusError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.response = SimpleNamespace(status_code=status_code)


def test_reservations_are_spaced_by_interval(clock):
    state = RateLimitState(clock=clock)
    waits = [state.reserve_dispatch(1.0) for _ in range(5)]
    assert waits == [0.0, 1.0, 2.0, 3.0, 4.0]
    assert state.total_dispatches == 5


def test_reservation_after_idle_period_does_not_wait(clock):
    state = RateLimitState(clock=clock)
    state.reserve_dispatch(1.0)
    clock.now += 5
    assert state.reserve_dispatch(1.0) == 0.0


@pytest.mark.asyncio
async def test_sequential_calls_respect_rate_floor(clock):
    profile = make_profile(call_interval_ms=1000)
    dispatcher = RateLimitedDispatcher(profile, state=RateLimitState(clock=clock), sleep=clock.sleep)
    call_times = []

    async def record():
        call_times.append(clock())
        return len(call_times)

    start = clock()
    for _ in range(5):
        await dispatcher.call(record)

    assert call_times[-1] - start >= 4 * 1.0
    gaps = [b - a for a, b in zip(call_times, call_times[1:])]
    assert all(gap >= 1.0 for gap in gaps)


@pytest.mark.asyncio
async def test_in_flight_never_exceeds_max_concurrent():
    profile = make_profile(max_concurrent_requests=2)
    state = RateLimitState()
    dispatcher = RateLimitedDispatcher(profile, state=state)
    running = 0
    observed = []

    async def work():
        nonlocal running
        running += 1
        observed.append(running)
        await asyncio.sleep(0.01)
        running -= 1
        return "done"

    results = await asyncio.gather(*(dispatcher.call(work) for _ in range(6)))

    assert results == ["done"] * 6
    assert max(observed) <= 2
    assert state.peak_in_flight <= 2
    assert state.in_flight == 0


@pytest.mark.asyncio
async def test_rate_limit_is_retried_with_backoff(clock):
    dispatcher = RateLimitedDispatcher(make_profile(retry_backoff_ms=1000),
                                       state=RateLimitState(clock=clock), sleep=clock.sleep)
    calls = 0

    async def flaky():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise HttpStatusError(429)
        return "ok"

    assert await dispatcher.call(flaky) == "ok"
    assert calls == 3
    assert clock.sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_persistent_rate_limit_raises(clock):
    dispatcher = RateLimitedDispatcher(make_profile(), state=RateLimitState(clock=clock), sleep=clock.sleep)
    calls = 0

    async def always_limited():
        nonlocal calls
        calls += 1
        raise RuntimeError("429 Too Many Requests")

    with pytest.raises(RateLimitExceededError) as exc_info:
        await dispatcher.call(always_limited)

    assert calls == dispatcher.max_attempts
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert dispatcher.state.in_flight == 0


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(dispatcher):
    calls = 0

    async def broken():
        nonlocal calls
        calls += 1
        raise ValueError("bad params")

    with pytest.raises(ValueError):
        await dispatcher.call(broken)

    assert calls == 1
    assert dispatcher.state.in_flight == 0


def test_backoff_is_capped():
    dispatcher = RateLimitedDispatcher(make_profile(retry_backoff_ms=15000))
    assert dispatcher.backoff_for(0) == 15.0
    assert dispatcher.backoff_for(1) == 30.0
    assert dispatcher.backoff_for(2) == RateLimitedDispatcher.MAX_BACKOFF


def test_rate_limit_detection_walks_exception_chain():
    try:
        try:
            raise HttpStatusError(429)
        except HttpStatusError as inner:
            raise RuntimeError("rpc request failed") from inner
    except RuntimeError as outer:
        assert is_rate_limit_error(outer)

    assert is_rate_limit_error("Server responded with 429 Too Many Requests")
    assert not is_rate_limit_error(HttpStatusError(500))
    assert not is_rate_limit_error("Blockhash not found")


def test_retry_after_parsing():
    assert retry_after_seconds({"Retry-After": "2"}) == 2.0
    assert retry_after_seconds({"Retry-After": "soon"}) is None
    assert retry_after_seconds({}) is None
