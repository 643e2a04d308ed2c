# ruff: noqa: S101
"""Tests for the per-API rate limiter, error classification and backoff."""

from __future__ import annotations

import threading

import httpx
import pytest
from conftest import FakeClock, fast_limiter

from ledgersync.errors import (
    AuthenticationError,
    FatalProviderError,
    RateLimitError,
    TransientNetworkError,
    ValidationError,
)
from ledgersync.ratelimit import (
    ErrorClass,
    RateLimiter,
    RetryPolicy,
    classify_error,
    parse_retry_after,
)


def _status_error(status: int, headers: dict[str, str] | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.com/x")
    response = httpx.Response(status, headers=headers, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


class TestClassifyError:
    """Failures are sorted into rate limited, transient and fatal."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("exc", "expected"),
        [
            (RateLimitError("slow down"), ErrorClass.RATE_LIMITED),
            (TransientNetworkError("reset"), ErrorClass.TRANSIENT),
            (FatalProviderError("bad request", status_code=400), ErrorClass.FATAL),
            (AuthenticationError("expired"), ErrorClass.FATAL),
            (ValidationError("bad amount"), ErrorClass.FATAL),
            (httpx.ConnectError("refused"), ErrorClass.TRANSIENT),
            (httpx.ReadTimeout("timeout"), ErrorClass.TRANSIENT),
            (ValueError("Rate limit exceeded"), ErrorClass.RATE_LIMITED),
            (KeyError("missing"), ErrorClass.FATAL),
        ],
    )
    def test_taxonomy(self, exc: BaseException, expected: ErrorClass) -> None:
        assert classify_error(exc) is expected

    @pytest.mark.unit
    def test_http_status_errors(self) -> None:
        assert classify_error(_status_error(429)) is ErrorClass.RATE_LIMITED
        assert classify_error(_status_error(503)) is ErrorClass.TRANSIENT
        assert classify_error(_status_error(400)) is ErrorClass.FATAL

    @pytest.mark.unit
    def test_errno_style_codes_are_transient(self) -> None:
        exc = OSError("connection reset")
        exc.code = "ECONNRESET"  # type: ignore[attr-defined]
        assert classify_error(exc) is ErrorClass.TRANSIENT

    @pytest.mark.unit
    def test_parse_retry_after(self) -> None:
        assert parse_retry_after("7") == 7.0
        assert parse_retry_after("-3") == 0.0
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
        assert parse_retry_after(None) is None


class TestRetryPolicy:
    """Backoff grows exponentially and is capped."""

    @pytest.mark.unit
    def test_exponential_growth(self) -> None:
        policy = RetryPolicy(base_backoff=1.0, max_jitter=0.0, max_backoff=30.0)
        delays = [policy.backoff_for(n, rand=lambda: 0.0) for n in range(4)]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    @pytest.mark.unit
    def test_jitter_added(self) -> None:
        policy = RetryPolicy(base_backoff=1.0, max_jitter=1.0)
        assert policy.backoff_for(0, rand=lambda: 0.5) == 1.5

    @pytest.mark.unit
    def test_retry_after_is_a_floor(self) -> None:
        policy = RetryPolicy(base_backoff=1.0, max_jitter=0.0)
        assert policy.backoff_for(0, retry_after=12.0, rand=lambda: 0.0) == 12.0

    @pytest.mark.unit
    def test_capped_at_max_backoff(self) -> None:
        policy = RetryPolicy(base_backoff=1.0, max_jitter=1.0, max_backoff=30.0)
        assert policy.backoff_for(10, rand=lambda: 0.99) == 30.0
        assert policy.backoff_for(0, retry_after=120.0, rand=lambda: 0.0) == 30.0


class TestRateLimiter:
    """Dispatch order, spacing, retries and statistics."""

    @pytest.mark.unit
    def test_rejects_zero_budget(self) -> None:
        with pytest.raises(ValueError, match="at least 1"):
            RateLimiter("bad", requests_per_minute=0)

    @pytest.mark.unit
    def test_interval_from_budget(self) -> None:
        assert RateLimiter("staging", requests_per_minute=18).interval == pytest.approx(
            60 / 18
        )

    @pytest.mark.unit
    def test_dispatches_are_spaced(self, fake_clock: FakeClock) -> None:
        limiter = fast_limiter(requests_per_minute=60, clock=fake_clock)
        dispatched: list[float] = []

        for _ in range(3):
            limiter.submit(lambda: dispatched.append(fake_clock()))

        assert dispatched == [1000.0, 1001.0, 1002.0]
        assert fake_clock.sleeps == [1.0, 1.0]

    @pytest.mark.unit
    def test_no_wait_when_interval_elapsed(self, fake_clock: FakeClock) -> None:
        limiter = fast_limiter(requests_per_minute=60, clock=fake_clock)
        limiter.submit(lambda: None)
        fake_clock.now += 5
        limiter.submit(lambda: None)
        assert fake_clock.sleeps == []

    @pytest.mark.unit
    def test_fifo_order_across_threads(self) -> None:
        limiter = RateLimiter(
            "fifo", requests_per_minute=60000, sleep=lambda _s: None
        )
        order: list[int] = []
        gate = threading.Event()

        def first() -> None:
            gate.wait(timeout=5)
            order.append(0)

        holder = threading.Thread(target=lambda: limiter.submit(first))
        holder.start()
        while limiter.queue_length == 0:
            pass

        workers = []
        for i in range(1, 4):
            worker = threading.Thread(
                target=lambda i=i: limiter.submit(lambda: order.append(i))
            )
            worker.start()
            while limiter.queue_length < i + 1:
                pass
            workers.append(worker)

        gate.set()
        holder.join(timeout=5)
        for worker in workers:
            worker.join(timeout=5)

        assert order == [0, 1, 2, 3]
        assert limiter.queue_length == 0

    @pytest.mark.unit
    def test_retries_rate_limit_then_succeeds(self, fake_clock: FakeClock) -> None:
        limiter = RateLimiter(
            "staging",
            requests_per_minute=60,
            retry_policy=RetryPolicy(max_retries=3, base_backoff=1.0, max_jitter=0.0),
            clock=fake_clock,
            sleep=fake_clock.sleep,
            rand=lambda: 0.0,
        )
        outcomes = iter(
            [RateLimitError("429", retry_after=5.0), RateLimitError("429", retry_after=5.0)]
        )

        def call() -> str:
            for exc in outcomes:
                raise exc
            return "ok"

        assert limiter.submit(call) == "ok"
        assert fake_clock.sleeps == [5.0, 5.0]
        assert limiter.stats.retries == 2
        assert limiter.stats.rate_limit_hits == 2
        assert limiter.stats.successful_requests == 1
        assert limiter.stats.failed_requests == 0

    @pytest.mark.unit
    def test_retries_honour_spacing(self, fake_clock: FakeClock) -> None:
        limiter = RateLimiter(
            "slow",
            requests_per_minute=6,
            retry_policy=RetryPolicy(max_retries=1, base_backoff=1.0, max_jitter=0.0),
            clock=fake_clock,
            sleep=fake_clock.sleep,
            rand=lambda: 0.0,
        )
        attempts: list[float] = []

        def call() -> None:
            attempts.append(fake_clock())
            if len(attempts) == 1:
                raise TransientNetworkError("reset")

        limiter.submit(call)
        # 1s backoff, then 9s more to reach the 10s interval
        assert attempts == [1000.0, 1010.0]
        assert fake_clock.sleeps == [1.0, 9.0]

    @pytest.mark.unit
    def test_exhausted_retries_raise_last_error(self, fake_clock: FakeClock) -> None:
        limiter = fast_limiter(max_retries=2, clock=fake_clock)
        calls = 0

        def call() -> None:
            nonlocal calls
            calls += 1
            raise TransientNetworkError(f"attempt {calls}")

        with pytest.raises(TransientNetworkError, match="attempt 3"):
            limiter.submit(call)
        assert calls == 3
        assert limiter.stats.failed_requests == 1
        assert limiter.stats.retries == 2

    @pytest.mark.unit
    def test_fatal_errors_are_not_retried(self, fake_clock: FakeClock) -> None:
        limiter = fast_limiter(max_retries=3, clock=fake_clock)
        calls = 0

        def call() -> None:
            nonlocal calls
            calls += 1
            raise AuthenticationError("token expired", status_code=401)

        with pytest.raises(AuthenticationError):
            limiter.submit(call)
        assert calls == 1
        assert limiter.stats.retries == 0

    @pytest.mark.unit
    def test_failure_releases_queue(self, fake_clock: FakeClock) -> None:
        limiter = fast_limiter(clock=fake_clock)

        def fail() -> None:
            raise FatalProviderError("nope")

        with pytest.raises(FatalProviderError):
            limiter.submit(fail)
        assert limiter.queue_length == 0
        assert limiter.submit(lambda: 42) == 42

    @pytest.mark.unit
    def test_update_config_and_status(self) -> None:
        limiter = RateLimiter("accounting", requests_per_minute=60)
        limiter.update_config(requests_per_minute=30, max_retries=5)

        status = limiter.status()
        assert status["name"] == "accounting"
        assert status["requests_per_minute"] == 30
        assert status["interval_seconds"] == 2.0
        assert status["max_retries"] == 5
        assert status["queue_length"] == 0

        with pytest.raises(ValueError):
            limiter.update_config(requests_per_minute=0)
