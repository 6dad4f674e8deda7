"""
Adaptive rate limiting and circuit breaking for SalesDrive calls.

SalesDrive allows roughly 10 requests per minute for the whole account, so
backoff state is shared by every caller in the process. Build one
RateLimiter at startup and pass it to every client.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .errors import (
    SalesDriveCircuitOpenError,
    SalesDriveRateLimitError,
    SalesDriveUnavailableError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RateLimitState:
    """Mutable backoff state. Only RateLimiter touches it."""

    base_delay: float
    max_delay: float
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    circuit_breaker_trips: int = 0
    last_trip_time: Optional[float] = None
    open_until: Optional[float] = None
    latched: bool = False


class RateLimiter:
    """
    Bounded retry with exponential backoff and a circuit breaker.

    Throttled calls back off by
    ``clamp(base_delay * GROWTH ** failures + jitter, MIN_DELAY, max_delay)``.
    Each success decays the failure counter by one step. Reaching
    FAILURE_THRESHOLD consecutive failures trips the breaker for
    COOLDOWN_SECONDS; after MAX_TRIPS trips inside TRIP_WINDOW_SECONDS the
    breaker stays open until reset() is called.
    """

    GROWTH = 2.0
    MIN_DELAY = 0.5
    SUCCESS_DECAY = 1
    FAILURE_THRESHOLD = 10
    COOLDOWN_SECONDS = 30 * 60
    MAX_TRIPS = 3
    TRIP_WINDOW_SECONDS = 4 * 3600

    def __init__(
        self,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        jitter_range: float = 1.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.jitter_range = jitter_range
        self.state = RateLimitState(base_delay=base_delay, max_delay=max_delay)

        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._lock = asyncio.Lock()

    def compute_delay(self, failures: int, jitter: float = 0.0) -> float:
        """Backoff delay in seconds for a given failure count."""
        exponent = min(max(failures, 0), 32)
        raw = self.state.base_delay * (self.GROWTH ** exponent) + jitter
        return min(max(raw, self.MIN_DELAY), self.state.max_delay)

    def _jitter(self) -> float:
        if self.jitter_range <= 0:
            return 0.0
        return self._rng(-self.jitter_range, self.jitter_range)

    async def check_circuit(self) -> None:
        """Raise SalesDriveCircuitOpenError while the breaker is open."""
        async with self._lock:
            state = self.state
            if state.latched:
                raise SalesDriveCircuitOpenError(
                    f"Circuit breaker latched after {state.circuit_breaker_trips} trips; "
                    "manual reset required"
                )
            if state.open_until is None:
                return

            now = self._clock()
            if now < state.open_until:
                remaining = state.open_until - now
                raise SalesDriveCircuitOpenError(
                    f"Circuit breaker open for another {remaining:.0f}s",
                    open_until=state.open_until,
                )

            logger.info("Circuit breaker cooldown elapsed, allowing requests again")
            state.open_until = None

    async def record_throttle(self) -> float:
        """
        Register a throttled response and return the delay to wait.

        Raises SalesDriveCircuitOpenError when this failure trips the breaker.
        """
        async with self._lock:
            state = self.state
            now = self._clock()
            state.consecutive_failures += 1
            state.last_failure_time = now

            if state.consecutive_failures >= self.FAILURE_THRESHOLD:
                self._trip(now)
                raise SalesDriveCircuitOpenError(
                    f"Circuit breaker tripped after {self.FAILURE_THRESHOLD} "
                    f"consecutive throttled requests",
                    open_until=state.open_until,
                )

            delay = self.compute_delay(state.consecutive_failures, self._jitter())
            logger.debug(
                f"Rate limit delay {delay:.1f}s "
                f"(consecutive failures: {state.consecutive_failures})"
            )
            return delay

    async def record_success(self) -> None:
        async with self._lock:
            state = self.state
            if state.consecutive_failures > 0:
                state.consecutive_failures = max(
                    0, state.consecutive_failures - self.SUCCESS_DECAY
                )
                logger.debug(
                    f"Rate limit state decayed, consecutive failures: "
                    f"{state.consecutive_failures}"
                )

    def _trip(self, now: float) -> None:
        # Caller holds the lock.
        state = self.state
        if (
            state.last_trip_time is not None
            and now - state.last_trip_time > self.TRIP_WINDOW_SECONDS
        ):
            state.circuit_breaker_trips = 0

        state.circuit_breaker_trips += 1
        state.last_trip_time = now
        state.open_until = now + self.COOLDOWN_SECONDS
        state.consecutive_failures = 0

        if state.circuit_breaker_trips >= self.MAX_TRIPS:
            state.latched = True
            logger.error(
                f"Circuit breaker latched open after {state.circuit_breaker_trips} trips"
            )
        else:
            logger.error(
                f"Circuit breaker OPEN for {self.COOLDOWN_SECONDS // 60} minutes "
                f"(trip {state.circuit_breaker_trips}/{self.MAX_TRIPS})"
            )

    def reset(self) -> None:
        """Close the breaker and forget all failures."""
        state = self.state
        self.state = RateLimitState(base_delay=state.base_delay, max_delay=state.max_delay)
        logger.info("Rate limit state reset")

    def snapshot(self) -> Dict[str, Any]:
        return asdict(self.state)

    async def execute(
        self,
        call: Callable[[], Awaitable[T]],
        description: str = "request",
    ) -> T:
        """
        Run ``call`` with bounded retries.

        Throttled attempts back off adaptively, unavailable attempts wait
        retry_delay. Any other exception propagates immediately.

        Raises:
            SalesDriveCircuitOpenError: breaker is open or tripped by this call
            SalesDriveRateLimitError: still throttled after max_attempts
            SalesDriveUnavailableError: still failing after max_attempts
        """
        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            await self.check_circuit()
            is_last = attempt == self.max_attempts - 1

            try:
                result = await call()

            except SalesDriveRateLimitError as e:
                last_error = e
                delay = await self.record_throttle()
                if e.retry_after:
                    delay = min(max(delay, e.retry_after), self.state.max_delay)
                logger.warning(
                    f"{description}: rate limited, waiting {delay:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_attempts})"
                )
                if not is_last:
                    await self._sleep(delay)
                continue

            except SalesDriveUnavailableError as e:
                last_error = e
                logger.warning(
                    f"{description}: {e}, retrying in {self.retry_delay:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_attempts})"
                )
                if not is_last:
                    await self._sleep(self.retry_delay)
                continue

            await self.record_success()
            return result

        # All retries exhausted
        raise last_error or SalesDriveUnavailableError(f"{description}: max retries exceeded")
