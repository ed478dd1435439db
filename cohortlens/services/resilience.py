"""
Resilience Patterns — Retry with Backoff + Circuit Breaker.

Guards the remote narrative-synthesis endpoint. A breaker is a plain object
owned by whoever builds the synthesizer and passed to it; nothing here
holds module-level breaker state.
"""

import asyncio
import random
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from cohortlens.exceptions import CohortLensError, ErrorCode

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# ── Retry with Exponential Backoff ─────────────────────────────────────────


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: float = 0.0) -> float:
    """Seconds to wait after failed attempt number `attempt` (0-based)."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay + random.uniform(0, jitter) if jitter else delay


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 16.0,
    jitter: float = 0.5,
    retry_on: tuple = (Exception,),
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call `fn` until it succeeds or `max_retries` retries are spent.

    Waits base_delay * 2^attempt (+ up to `jitter`) between attempts, so
    the defaults give 1s, 2s, 4s. Exceptions outside `retry_on` propagate
    on first occurrence; the last retryable one propagates once retries
    run out.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except retry_on as exc:
            if attempt >= max_retries:
                logger.error(
                    "retry_exhausted",
                    operation=operation_name,
                    attempts=attempt + 1,
                    error=str(exc),
                )
                raise
            delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            attempt += 1
            logger.warning(
                "retry_scheduled",
                operation=operation_name,
                attempt=attempt,
                max_retries=max_retries,
                delay=round(delay, 2),
                error=str(exc),
            )
            await sleep(delay)


# ── Circuit Breaker ─────────────────────────────────────────────────────────


class CircuitState(str, Enum):
    CLOSED = "closed"        # calls pass through
    OPEN = "open"            # calls fail fast
    HALF_OPEN = "half_open"  # one probe allowed


class CircuitOpenError(CohortLensError):
    """A call was rejected without reaching the dependency."""

    def __init__(self, breaker: str, reason: str = "open"):
        super().__init__(
            message=f"Circuit breaker '{breaker}' is {reason.upper()}",
            code=ErrorCode.CIRCUIT_BREAKER_OPEN,
            details={"breaker": breaker, "reason": reason},
        )


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker for one remote dependency.

    CLOSED ──(failure_threshold consecutive failures)──► OPEN
    OPEN ──(recovery_timeout elapsed)──► HALF_OPEN
    HALF_OPEN ──(probe succeeds)──► CLOSED
    HALF_OPEN ──(probe fails)──► OPEN

    While HALF_OPEN exactly one call is let through; concurrent callers
    are rejected until the probe settles. Only exceptions listed in
    `counted_exceptions` are failures; anything else propagates untouched.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_timeout: float = 60.0,
        counted_exceptions: tuple = (Exception,),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.counted_exceptions = counted_exceptions
        self._clock = clock
        self.reset()

    # ── State ────────────────────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._cooldown_elapsed():
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def is_open(self) -> bool:
        """True when the next call would be rejected without a probe."""
        state = self.state
        return state is CircuitState.OPEN or (
            state is CircuitState.HALF_OPEN and self._probe_in_flight
        )

    def _cooldown_elapsed(self) -> bool:
        return self._clock() - self._opened_at >= self.recovery_timeout

    def _transition(self, new_state: CircuitState) -> None:
        old_state, self._state = self._state, new_state
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        logger.info(
            "circuit_state_changed",
            breaker=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
            failure_count=self._failure_count,
        )

    # ── Calls ────────────────────────────────────────────────────────────

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Run `fn` unless the circuit rejects it."""
        state = self.state
        if state is CircuitState.OPEN:
            logger.warning("circuit_open_rejected", breaker=self.name)
            raise CircuitOpenError(self.name)
        if state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name, reason="testing")
            self._probe_in_flight = True

        try:
            result = await fn(*args, **kwargs)
        except self.counted_exceptions as exc:
            self._on_failure(exc)
            raise
        except BaseException:
            self._probe_in_flight = False
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self._probe_in_flight = False
        self._failure_count = 0
        if self._state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def _on_failure(self, exc: BaseException) -> None:
        self._probe_in_flight = False
        self._failure_count += 1
        self._last_failure = str(exc)
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self._state is CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
            logger.warning(
                "circuit_opened",
                breaker=self.name,
                failures=self._failure_count,
                threshold=self.failure_threshold,
                error=str(exc),
            )
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Back to CLOSED with a clean counter."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._last_failure: Optional[str] = None

    def snapshot(self) -> dict:
        """State for health reporting."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "last_failure": self._last_failure,
        }
