"""
Resilience policy for calls to the data service.

Layering, outermost first:

  total timeout  ->  retry (tenacity, jittered back-off)  ->  circuit breaker  ->  attempt timeout

Retries are kept to a minimum: failed aggregation queries are slow, and
retrying them mostly adds load.  Transient outcomes (transport errors,
attempt timeouts, HTTP 408/429/5xx) are retried and counted by the breaker;
anything else is returned to the caller on the first attempt.
"""
from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from whatcar.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({408, 429})


def is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in TRANSIENT_STATUS_CODES


class TransientStatusError(Exception):
    """Raised inside an attempt when the response status is worth retrying."""

    def __init__(self, status_code: int):
        super().__init__(f"Response status code does not indicate success: {status_code}")
        self.status_code = status_code


class CircuitOpenError(Exception):
    """The breaker is open; the call was not attempted."""


TRANSIENT_ERRORS = (asyncio.TimeoutError, httpx.TransportError, TransientStatusError)


# ── Circuit breaker ─────────────────────────────────────

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure-ratio breaker over a sliding sampling window.

    Parameters
    ----------
    sampling_seconds : float
        Length of the window in which outcomes are counted.
    failure_ratio : float
        Ratio of failures (0-1) at which the breaker opens.
    min_throughput : int
        Minimum number of calls in the window before the ratio is considered.
    break_seconds : float
        How long the breaker stays open before a single trial call is allowed.
    """

    def __init__(
        self,
        sampling_seconds: float = 30.0,
        failure_ratio: float = 0.1,
        min_throughput: int = 100,
        break_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sampling = sampling_seconds
        self._ratio = failure_ratio
        self._min_throughput = min_throughput
        self._break = break_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._outcomes: deque[tuple[float, bool]] = deque()
        self._state = CLOSED
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == OPEN and self._clock() - self._opened_at >= self._break:
                return HALF_OPEN
            return self._state

    def before_call(self) -> None:
        """Raise ``CircuitOpenError`` unless a call may go through now."""
        with self._lock:
            if self._state == CLOSED:
                return
            if self._state == OPEN and self._clock() - self._opened_at >= self._break:
                self._state = HALF_OPEN
                logger.info("Circuit half-open -- allowing a trial call")
                return
            raise CircuitOpenError("Circuit is open; data service calls are short-circuited")

    def record_success(self) -> None:
        with self._lock:
            if self._state == HALF_OPEN:
                logger.info("Circuit closed after successful trial call")
                self._state = CLOSED
                self._outcomes.clear()
                return
            self._record(False)

    def record_failure(self) -> None:
        with self._lock:
            if self._state == HALF_OPEN:
                self._trip()
                return
            self._record(True)
            failures = sum(1 for _, failed in self._outcomes if failed)
            total = len(self._outcomes)
            if total >= self._min_throughput and failures / total >= self._ratio:
                self._trip()

    def release(self) -> None:
        """Give back a half-open trial slot whose outcome was neither success nor failure."""
        with self._lock:
            if self._state == HALF_OPEN:
                self._state = OPEN
                self._opened_at = self._clock() - self._break

    def _record(self, failed: bool) -> None:
        now = self._clock()
        self._outcomes.append((now, failed))
        while self._outcomes and now - self._outcomes[0][0] > self._sampling:
            self._outcomes.popleft()

    def _trip(self) -> None:
        logger.warning("Circuit opened for %.1fs", self._break)
        self._state = OPEN
        self._opened_at = self._clock()
        self._outcomes.clear()


# ── Policy ──────────────────────────────────────────────


@dataclass
class ResiliencePolicy:
    attempt_timeout: float = 90.0
    total_timeout: float = 120.0
    max_retries: int = 1
    retry_base_delay: float = 2.0
    retry_jitter: float = 1.0
    breaker: CircuitBreaker | None = None

    def __post_init__(self):
        if self.attempt_timeout >= self.total_timeout:
            raise ValueError("attempt_timeout must be shorter than total_timeout")
        if self.breaker is None:
            self.breaker = CircuitBreaker(sampling_seconds=2 * self.attempt_timeout)

    async def run(self, attempt: Callable[[], Awaitable[T]]) -> T:
        """Run *attempt* under the full policy.

        Raises
        ------
        asyncio.TimeoutError
            When the total budget or the last attempt's budget is exhausted.
        CircuitOpenError
            When the breaker refuses the call.
        httpx.TransportError, TransientStatusError
            When the last attempt failed with a transient outcome.
        """
        return await asyncio.wait_for(self._with_retry(attempt), self.total_timeout)

    async def _with_retry(self, attempt: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential_jitter(initial=self.retry_base_delay, jitter=self.retry_jitter),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for state in retrying:
            with state:
                result = await self._guarded(attempt)
        return result

    async def _guarded(self, attempt: Callable[[], Awaitable[T]]) -> T:
        self.breaker.before_call()
        try:
            result = await asyncio.wait_for(attempt(), self.attempt_timeout)
        except TRANSIENT_ERRORS:
            self.breaker.record_failure()
            raise
        except BaseException:
            self.breaker.release()
            raise
        self.breaker.record_success()
        return result


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Data service attempt %d failed (%s) -- retrying",
        state.attempt_number, type(exc).__name__ if exc else "unknown",
    )
