"""Guards around outbound provider calls: rate limiting, circuit breaking, retry."""

import enum
import logging
import random
import threading
import time
from typing import Callable, Optional, TypeVar

import requests

from .errors import CircuitOpenError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """Rate-limit, network and timeout failures are worth retrying; nothing else is."""
    return isinstance(exc, (TransientProviderError, requests.ConnectionError, requests.Timeout))


def with_retry(
    fn: Callable[[], T],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    should_retry: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Call ``fn``, retrying retryable failures with exponential backoff and jitter."""
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if attempt == max_attempts or not should_retry(exc):
                raise
            next_delay = min(delay * backoff_factor, max_delay)
            # Up to 30% jitter so callers do not retry in lockstep.
            actual_delay = next_delay + rng() * 0.3 * next_delay
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt, max_attempts, exc, actual_delay,
            )
            sleep(actual_delay)
            delay = next_delay
    raise RuntimeError("unreachable")


class TokenBucket:
    """
    Token-bucket rate limiter.

    Holds at most ``capacity`` tokens and regains ``refill_amount`` tokens
    every ``refill_interval`` seconds (continuously, pro rata). ``acquire``
    blocks the caller until a token is available instead of failing.
    """

    def __init__(
        self,
        capacity: int,
        refill_amount: int,
        refill_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if capacity < 1 or refill_amount < 1 or refill_interval <= 0:
            raise ValueError("capacity, refill_amount and refill_interval must be positive")
        self.capacity = capacity
        self.refill_amount = refill_amount
        self.refill_interval = refill_interval
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = now - self._last_refill
        if elapsed <= 0:
            return
        added = elapsed / self.refill_interval * self.refill_amount
        self._tokens = min(float(self.capacity), self._tokens + added)
        self._last_refill = now

    @property
    def available(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def acquire(self) -> None:
        while True:
            with self._lock:
                self._refill(self._clock())
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait = (1 - self._tokens) * self.refill_interval / self.refill_amount
            self._sleep(wait)


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Three-state circuit breaker.

    * closed: calls pass through; consecutive failures inside
      ``failure_window`` seconds are counted and the circuit opens when the
      count reaches ``failure_threshold``.
    * open: calls are rejected with ``CircuitOpenError`` without running.
    * half_open: once ``reset_timeout`` has elapsed, exactly one trial call is
      admitted. Success closes the circuit, failure reopens it.

    Only exceptions matching ``counts_as_failure`` count; any other outcome
    proves the dependency is reachable and resets the count.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 6,
        failure_window: float = 60.0,
        reset_timeout: float = 30.0,
        counts_as_failure: Callable[[BaseException], bool] = lambda exc: True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.reset_timeout = reset_timeout
        self._counts_as_failure = counts_as_failure
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._first_failure_at: Optional[float] = None
        self._last_failure_at: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        self._before_call()
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            if self._counts_as_failure(exc):
                self._on_failure()
            else:
                self._on_success()
            raise
        self._on_success()
        return result

    def _before_call(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.OPEN:
                elapsed = now - self._opened_at
                if elapsed < self.reset_timeout:
                    raise CircuitOpenError(self.name, self.reset_timeout - elapsed)
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                logger.info("Circuit '%s' half-open; admitting one trial call", self.name)
                return
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name, 0.0)
                self._trial_in_flight = True

    def _on_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit '%s' closed", self.name)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._first_failure_at = None
            self._trial_in_flight = False

    def _on_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._last_failure_at = now
            if self._state == CircuitState.HALF_OPEN:
                self._open(now)
                return
            if self._first_failure_at is None or now - self._first_failure_at > self.failure_window:
                self._failures = 0
                self._first_failure_at = now
            self._failures += 1
            if self._failures >= self.failure_threshold:
                self._open(now)

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        logger.warning(
            "Circuit '%s' opened after %d consecutive failures", self.name, self._failures
        )

    def metrics(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "failures": self._failures,
            "lastFailureTime": self._last_failure_at,
        }
