"""
Unit tests -- resilience policy: attempt/total timeouts, retry, circuit breaker.
"""
import asyncio

import httpx
import pytest

from fakes import fast_policy
from whatcar.db.resilience import (
    CLOSED,
    HALF_OPEN,
    OPEN,
    CircuitOpenError,
    ResiliencePolicy,
    TransientStatusError,
    is_transient_status,
)


# ── Status classification ───────────────────────────────

@pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
def test_transient_statuses(status):
    assert is_transient_status(status)


@pytest.mark.parametrize("status", [200, 400, 401, 404])
def test_non_transient_statuses(status):
    assert not is_transient_status(status)


# ── Policy construction ─────────────────────────────────

def test_attempt_must_be_shorter_than_total():
    with pytest.raises(ValueError):
        ResiliencePolicy(attempt_timeout=120, total_timeout=120)


def test_default_breaker_window_is_twice_attempt():
    policy = ResiliencePolicy()
    assert policy.breaker._sampling == 180


# ── Retry ───────────────────────────────────────────────

class _Flaky:
    def __init__(self, failures, exc_factory):
        self.failures = failures
        self.exc_factory = exc_factory
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_factory()
        return "ok"


@pytest.mark.asyncio
async def test_success_first_try():
    attempt = _Flaky(0, lambda: RuntimeError())
    assert await fast_policy().run(attempt) == "ok"
    assert attempt.calls == 1


@pytest.mark.asyncio
async def test_transient_error_retried_once():
    attempt = _Flaky(1, lambda: httpx.ConnectError("refused"))
    assert await fast_policy().run(attempt) == "ok"
    assert attempt.calls == 2


@pytest.mark.asyncio
async def test_at_most_one_retry():
    attempt = _Flaky(5, lambda: TransientStatusError(503))
    with pytest.raises(TransientStatusError):
        await fast_policy().run(attempt)
    assert attempt.calls == 2


@pytest.mark.asyncio
async def test_non_transient_error_not_retried():
    attempt = _Flaky(5, lambda: ValueError("bad"))
    with pytest.raises(ValueError):
        await fast_policy().run(attempt)
    assert attempt.calls == 1


# ── Timeouts ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_attempt_timeout_raises_timeout():
    calls = 0

    async def slow():
        nonlocal calls
        calls += 1
        await asyncio.sleep(5)

    policy = fast_policy(attempt_timeout=0.05, total_timeout=1.0)
    with pytest.raises(asyncio.TimeoutError):
        await policy.run(slow)
    assert calls == 2  # attempt timeouts are transient


@pytest.mark.asyncio
async def test_total_timeout_bounds_retries():
    async def slow():
        await asyncio.sleep(5)

    policy = fast_policy(attempt_timeout=0.1, total_timeout=0.15, retry_base_delay=0.2)
    loop = asyncio.get_running_loop()
    start = loop.time()
    with pytest.raises(asyncio.TimeoutError):
        await policy.run(slow)
    assert loop.time() - start < 1.0


@pytest.mark.asyncio
async def test_caller_cancellation_is_not_a_timeout():
    async def slow():
        await asyncio.sleep(5)

    task = asyncio.ensure_future(fast_policy().run(slow))
    await asyncio.sleep(0.02)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


# ── Circuit breaker ─────────────────────────────────────

def test_breaker_opens_on_failure_ratio(tripping_breaker):
    tripping_breaker.record_success()
    assert tripping_breaker.state == CLOSED
    tripping_breaker.record_failure()
    assert tripping_breaker.state == OPEN
    with pytest.raises(CircuitOpenError):
        tripping_breaker.before_call()


def test_breaker_needs_min_throughput(tripping_breaker):
    tripping_breaker.record_failure()
    assert tripping_breaker.state == CLOSED


def test_breaker_half_open_after_break(tripping_breaker, clock):
    tripping_breaker.record_failure()
    tripping_breaker.record_failure()
    clock.advance(5)
    assert tripping_breaker.state == HALF_OPEN
    tripping_breaker.before_call()
    tripping_breaker.record_success()
    assert tripping_breaker.state == CLOSED


def test_breaker_trial_failure_reopens(tripping_breaker, clock):
    tripping_breaker.record_failure()
    tripping_breaker.record_failure()
    clock.advance(5)
    tripping_breaker.before_call()
    tripping_breaker.record_failure()
    assert tripping_breaker.state == OPEN


def test_breaker_released_trial_can_be_retried(tripping_breaker, clock):
    tripping_breaker.record_failure()
    tripping_breaker.record_failure()
    clock.advance(5)
    tripping_breaker.before_call()
    tripping_breaker.release()
    tripping_breaker.before_call()  # another trial is allowed straight away


def test_breaker_old_outcomes_leave_the_window(tripping_breaker, clock):
    tripping_breaker.record_failure()
    clock.advance(61)
    tripping_breaker.record_success()
    tripping_breaker.record_success()
    assert tripping_breaker.state == CLOSED


@pytest.mark.asyncio
async def test_open_breaker_short_circuits_policy(tripping_breaker):
    policy = fast_policy(max_retries=0, breaker=tripping_breaker)
    attempt = _Flaky(10, lambda: httpx.ConnectError("refused"))

    for _ in range(2):
        with pytest.raises(httpx.ConnectError):
            await policy.run(attempt)

    with pytest.raises(CircuitOpenError):
        await policy.run(attempt)
    assert attempt.calls == 2
