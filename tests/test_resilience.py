import pytest
import requests

from order_pipeline.errors import CircuitOpenError, PermanentProviderError, TransientProviderError
from order_pipeline.resilience import (
    CircuitBreaker,
    CircuitState,
    TokenBucket,
    is_transient,
    with_retry,
)


class Ticker:
    """Monotonic fake clock; ``sleep`` advances it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _flaky(failures, exc_type=TransientProviderError):
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise exc_type("boom")
        return "ok"

    return fn, calls


def test_is_transient_classification():
    assert is_transient(TransientProviderError("429"))
    assert is_transient(requests.ConnectionError())
    assert is_transient(requests.Timeout())
    assert not is_transient(PermanentProviderError("400"))
    assert not is_transient(ValueError())


def test_with_retry_recovers_from_transient_failures():
    ticker = Ticker()
    fn, calls = _flaky(2)

    assert with_retry(fn, max_attempts=3, initial_delay=1.0, sleep=ticker.sleep, rng=lambda: 0.0) == "ok"
    assert calls["n"] == 3
    assert ticker.sleeps == [2.0, 4.0]


def test_with_retry_does_not_retry_permanent_errors():
    ticker = Ticker()
    fn, calls = _flaky(1, PermanentProviderError)

    with pytest.raises(PermanentProviderError):
        with_retry(fn, sleep=ticker.sleep)

    assert calls["n"] == 1
    assert ticker.sleeps == []


def test_with_retry_gives_up_after_max_attempts():
    ticker = Ticker()
    fn, calls = _flaky(10)

    with pytest.raises(TransientProviderError):
        with_retry(fn, max_attempts=3, sleep=ticker.sleep)

    assert calls["n"] == 3


def test_with_retry_caps_delay_and_adds_bounded_jitter():
    ticker = Ticker()
    fn, _ = _flaky(3)

    with_retry(fn, max_attempts=4, initial_delay=10.0, max_delay=25.0, sleep=ticker.sleep, rng=lambda: 1.0)

    assert ticker.sleeps == pytest.approx([26.0, 32.5, 32.5])


def test_token_bucket_limits_burst_and_refills():
    ticker = Ticker()
    bucket = TokenBucket(capacity=2, refill_amount=2, refill_interval=1.0, clock=ticker, sleep=ticker.sleep)

    assert bucket.try_acquire()
    assert bucket.try_acquire()
    assert not bucket.try_acquire()

    ticker.now += 0.5
    assert bucket.try_acquire()
    assert not bucket.try_acquire()


def test_token_bucket_never_exceeds_capacity():
    ticker = Ticker()
    bucket = TokenBucket(capacity=3, refill_amount=3, clock=ticker, sleep=ticker.sleep)

    ticker.now += 100
    assert bucket.available == 3


def test_token_bucket_acquire_waits_for_a_token():
    ticker = Ticker()
    bucket = TokenBucket(capacity=1, refill_amount=4, refill_interval=1.0, clock=ticker, sleep=ticker.sleep)
    bucket.acquire()

    bucket.acquire()

    assert ticker.sleeps == [pytest.approx(0.25)]


def test_token_bucket_rejects_bad_configuration():
    with pytest.raises(ValueError):
        TokenBucket(capacity=0, refill_amount=1)


def _fail():
    raise TransientProviderError("503")


def test_breaker_opens_after_threshold_and_rejects_without_calling():
    ticker = Ticker()
    breaker = CircuitBreaker("api", failure_threshold=3, failure_window=60, reset_timeout=30, clock=ticker)

    for _ in range(3):
        with pytest.raises(TransientProviderError):
            breaker.call(_fail)

    assert breaker.state == CircuitState.OPEN
    calls = []
    with pytest.raises(CircuitOpenError) as exc_info:
        breaker.call(lambda: calls.append(1))
    assert calls == []
    assert exc_info.value.retry_after == pytest.approx(30)


def test_breaker_half_open_success_closes():
    ticker = Ticker()
    breaker = CircuitBreaker("api", failure_threshold=1, reset_timeout=30, clock=ticker)
    with pytest.raises(TransientProviderError):
        breaker.call(_fail)

    ticker.now += 30

    assert breaker.call(lambda: "sent") == "sent"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.metrics()["failures"] == 0


def test_breaker_half_open_failure_reopens():
    ticker = Ticker()
    breaker = CircuitBreaker("api", failure_threshold=1, reset_timeout=30, clock=ticker)
    with pytest.raises(TransientProviderError):
        breaker.call(_fail)
    ticker.now += 31

    with pytest.raises(TransientProviderError):
        breaker.call(_fail)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        breaker.call(lambda: "sent")


def test_breaker_failures_outside_window_do_not_accumulate():
    ticker = Ticker()
    breaker = CircuitBreaker("api", failure_threshold=3, failure_window=10, clock=ticker)

    for _ in range(2):
        with pytest.raises(TransientProviderError):
            breaker.call(_fail)
    ticker.now += 11
    with pytest.raises(TransientProviderError):
        breaker.call(_fail)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.metrics()["failures"] == 1


def test_breaker_ignores_errors_it_does_not_count():
    ticker = Ticker()
    breaker = CircuitBreaker("api", failure_threshold=1, counts_as_failure=is_transient, clock=ticker)

    def reject():
        raise PermanentProviderError("400")

    with pytest.raises(PermanentProviderError):
        breaker.call(reject)

    assert breaker.state == CircuitState.CLOSED
