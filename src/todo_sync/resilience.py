"""Retry with exponential backoff + jitter, guarded by a rolling-window circuit breaker.

Every remote call goes through ``RetryPolicy.execute``. Each attempt first asks the
breaker for permission, so an open circuit fails fast (``CircuitOpenError``) without
touching the network and without consuming further attempts.

Usage:
    breaker = CircuitBreaker(failure_ratio=0.5, minimum_throughput=10)
    policy = RetryPolicy(max_attempts=3, circuit_breaker=breaker)
    lists = await policy.execute(lambda: api_call(), description="GET /todolists")
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from todo_sync.config import Settings
from todo_sync.errors import CircuitOpenError, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Closed -> Open -> HalfOpen -> Closed/Open.

    Closed: outcomes are sampled in a rolling window of ``sampling_duration_seconds``.
    Once the window holds at least ``minimum_throughput`` calls and the failure ratio
    reaches ``failure_ratio`` the circuit opens for ``break_duration_seconds``.
    HalfOpen allows exactly one probe call; its outcome closes or re-opens the circuit.
    """

    def __init__(
        self,
        *,
        failure_ratio: float = 0.5,
        minimum_throughput: int = 10,
        sampling_duration_seconds: float = 30.0,
        break_duration_seconds: float = 30.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_ratio = failure_ratio
        self.minimum_throughput = minimum_throughput
        self.sampling_duration_seconds = sampling_duration_seconds
        self.break_duration_seconds = break_duration_seconds
        self.enabled = enabled
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._probe_in_flight = False
        # (timestamp, failed)
        self._window: deque[tuple[float, bool]] = deque()

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._break_elapsed():
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            logger.info("circuit breaker half-open: one probe call allowed")
        return self._state

    def _break_elapsed(self) -> bool:
        return self._clock() - self._opened_at >= self.break_duration_seconds

    def _prune(self, now: float) -> None:
        cutoff = now - self.sampling_duration_seconds
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    def before_call(self) -> None:
        """Raise CircuitOpenError if the call must not reach the network."""
        if not self.enabled:
            return
        state = self.state
        if state == CircuitState.CLOSED:
            return
        if state == CircuitState.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            return
        remaining = max(0.0, self.break_duration_seconds - (self._clock() - self._opened_at))
        raise CircuitOpenError(f"circuit is {state.value}; retry in {remaining:.1f}s")

    def record_success(self) -> None:
        if not self.enabled:
            return
        if self._state == CircuitState.HALF_OPEN:
            self._close()
            return
        now = self._clock()
        self._window.append((now, False))
        self._prune(now)

    def record_failure(self) -> None:
        if not self.enabled:
            return
        if self._state == CircuitState.HALF_OPEN:
            self._open()
            return
        if self._state == CircuitState.OPEN:
            return
        now = self._clock()
        self._window.append((now, True))
        self._prune(now)

        total = len(self._window)
        if total < self.minimum_throughput:
            return
        failures = sum(1 for _, failed in self._window if failed)
        if failures / total >= self.failure_ratio:
            self._open()

    def record_abandoned(self) -> None:
        """The call never finished (cancelled); free the probe slot without a verdict."""
        if not self.enabled:
            return
        if self._state == CircuitState.HALF_OPEN and self._probe_in_flight:
            self._probe_in_flight = False
            logger.info("circuit breaker probe abandoned; next call may probe")

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False
        self._window.clear()
        logger.warning(
            "circuit breaker opened for %.0fs due to high failure rate",
            self.break_duration_seconds,
        )

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._probe_in_flight = False
        self._window.clear()
        logger.info("circuit breaker closed; traffic resumes")

    @classmethod
    def from_settings(cls, s: Settings) -> "CircuitBreaker":
        return cls(
            failure_ratio=s.circuit_breaker_failure_ratio,
            minimum_throughput=s.circuit_breaker_minimum_throughput,
            sampling_duration_seconds=s.circuit_breaker_sampling_duration_seconds,
            break_duration_seconds=s.circuit_breaker_break_duration_seconds,
            enabled=s.circuit_breaker_enabled,
        )


class RetryPolicy:
    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        jitter_factor: float = 0.1,
        timeout_seconds: float | None = 30.0,
        enabled: bool = True,
        circuit_breaker: CircuitBreaker | None = None,
        retry_on: tuple[type[BaseException], ...] = (TransientNetworkError,),
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_factor = min(1.0, max(0.0, jitter_factor))
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled
        self.circuit_breaker = circuit_breaker
        self._retry_on = retry_on
        self._sleep = sleep
        self._rng = rng

    def compute_delay(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        capped = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))
        # uniform(-jitter, +jitter)
        jitter = (self._rng() * 2.0 - 1.0) * self.jitter_factor
        return max(0.0, capped * (1.0 + jitter))

    async def _attempt(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.timeout_seconds is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(
                f"remote call timed out after {self.timeout_seconds:.1f}s"
            ) from e

    async def execute(self, operation: Callable[[], Awaitable[T]], *, description: str = "") -> T:
        """Run ``operation`` with retries.

        Exhausting all attempts re-raises the last underlying error; an open circuit
        raises ``CircuitOpenError`` immediately.
        """
        attempts = self.max_attempts if self.enabled else 1
        label = description or getattr(operation, "__name__", "remote call")
        breaker = self.circuit_breaker

        attempt = 0
        while True:
            attempt += 1
            if breaker is not None:
                breaker.before_call()
            try:
                result = await self._attempt(operation)
            except self._retry_on as e:
                if breaker is not None:
                    breaker.record_failure()
                if attempt >= attempts:
                    logger.error("%s failed after %d attempt(s): %s", label, attempt, e)
                    raise
                delay = self.compute_delay(attempt)
                logger.warning(
                    "%s attempt %d/%d failed, retrying in %.2fs: %s",
                    label,
                    attempt,
                    attempts,
                    delay,
                    e,
                )
                await self._sleep(delay)
                continue
            except Exception:
                # The remote answered (e.g. 4xx / bad body): not a health signal.
                if breaker is not None:
                    breaker.record_success()
                raise
            except BaseException:
                # CancelledError from an outer deadline
                if breaker is not None:
                    breaker.record_abandoned()
                raise
            if breaker is not None:
                breaker.record_success()
            return result

    @classmethod
    def from_settings(cls, s: Settings, *, circuit_breaker: CircuitBreaker | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=s.retry_max_attempts,
            base_delay_seconds=s.retry_base_delay_ms / 1000.0,
            max_delay_seconds=s.retry_max_delay_ms / 1000.0,
            jitter_factor=s.retry_jitter_factor,
            timeout_seconds=s.retry_request_timeout_seconds,
            enabled=s.retry_enabled,
            circuit_breaker=circuit_breaker,
        )
