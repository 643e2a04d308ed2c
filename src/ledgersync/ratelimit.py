"""Per-API request rate limiting with retry and exponential backoff.

Every external API gets its own ``RateLimiter``. Calls submitted to a limiter
are dispatched strictly in submission order and spaced at least
``60 / requests_per_minute`` seconds apart, retries included. Rate-limit and
transient failures are retried with capped exponential backoff; anything else
is raised to the caller immediately.
"""

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, TypeVar

import httpx

from .errors import FatalProviderError, RateLimitError, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_CODES = {"ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "ETIMEDOUT"}


class ErrorClass(str, Enum):
    """How the limiter should react to a failed call."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry ceiling and backoff curve for one limiter."""

    max_retries: int = 3
    base_backoff: float = 1.0
    max_jitter: float = 1.0
    max_backoff: float = 30.0

    def backoff_for(
        self,
        attempt: int,
        retry_after: float | None = None,
        rand: Callable[[], float] = random.random,
    ) -> float:
        """Delay in seconds before retry number ``attempt + 1``.

        Args:
            attempt: Zero-based index of the attempt that just failed
            retry_after: Provider supplied minimum delay, if any
            rand: Source of jitter in [0, 1)

        Returns:
            float: ``base * 2**attempt`` plus jitter, at least ``retry_after``,
            never more than ``max_backoff``
        """
        delay = self.base_backoff * (2**attempt) + rand() * self.max_jitter
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_backoff)


def classify_error(exc: BaseException) -> ErrorClass:
    """Classify a failure as rate limited, transient or fatal."""
    if isinstance(exc, RateLimitError):
        return ErrorClass.RATE_LIMITED
    if isinstance(exc, TransientNetworkError):
        return ErrorClass.TRANSIENT
    if isinstance(exc, FatalProviderError):
        return ErrorClass.FATAL
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return ErrorClass.RATE_LIMITED
        if status >= 500:
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL
    if isinstance(exc, httpx.TransportError):
        return ErrorClass.TRANSIENT

    status_code = getattr(exc, "status_code", None)
    code = getattr(exc, "code", None)
    if status_code == 429 or code == "RATE_LIMITED" or "rate limit" in str(exc).lower():
        return ErrorClass.RATE_LIMITED
    if code in _TRANSIENT_CODES or (
        isinstance(status_code, int) and status_code >= 500
    ):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


def _retry_after(exc: BaseException) -> float | None:
    if isinstance(exc, RateLimitError):
        return exc.retry_after
    if isinstance(exc, httpx.HTTPStatusError):
        return parse_retry_after(exc.response.headers.get("Retry-After"))
    return None


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


@dataclass
class RateLimiterStats:
    """Counters kept by a limiter over its lifetime."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limit_hits: int = 0
    retries: int = 0
    total_wait_seconds: float = 0.0

    @property
    def average_wait_ms(self) -> float:
        """Average time a call spent queued before its first dispatch."""
        if not self.total_requests:
            return 0.0
        return self.total_wait_seconds / self.total_requests * 1000


class RateLimiter:
    """FIFO request gate for a single external API."""

    def __init__(
        self,
        name: str,
        requests_per_minute: int = 18,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ):
        """Initialize the limiter.

        Args:
            name: API name used in log messages
            requests_per_minute: Dispatch budget for this API
            retry_policy: Retry ceiling and backoff curve
            clock: Monotonic clock, injectable for tests
            sleep: Sleep function, injectable for tests
            rand: Jitter source, injectable for tests
        """
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")

        self.name = name
        self.requests_per_minute = requests_per_minute
        self.retry_policy = retry_policy or RetryPolicy()
        self.stats = RateLimiterStats()

        self._clock = clock
        self._sleep = sleep
        self._rand = rand
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0
        self._last_dispatch: float | None = None

    @property
    def interval(self) -> float:
        """Minimum seconds between two dispatches."""
        return 60.0 / self.requests_per_minute

    @property
    def queue_length(self) -> int:
        """Calls submitted but not yet finished, including the active one."""
        with self._cond:
            return self._next_ticket - self._now_serving

    def submit(self, call: Callable[[], T]) -> T:
        """Run ``call`` under the rate limit, retrying recoverable failures.

        Args:
            call: Zero-argument callable performing one request

        Returns:
            Whatever ``call`` returns

        Raises:
            Exception: The last error once retries are exhausted, or the first
                fatal error
        """
        queued_at = self._clock()
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._cond.wait()

        try:
            self.stats.total_requests += 1
            return self._run(call, queued_at)
        finally:
            with self._cond:
                self._now_serving += 1
                self._cond.notify_all()

    def _run(self, call: Callable[[], T], queued_at: float) -> T:
        attempt = 0
        while True:
            self._wait_for_slot()
            if attempt == 0:
                self.stats.total_wait_seconds += self._clock() - queued_at

            try:
                result = call()
            except Exception as e:
                error_class = classify_error(e)
                if error_class is ErrorClass.RATE_LIMITED:
                    self.stats.rate_limit_hits += 1

                if (
                    error_class is ErrorClass.FATAL
                    or attempt >= self.retry_policy.max_retries
                ):
                    self.stats.failed_requests += 1
                    raise

                delay = self.retry_policy.backoff_for(
                    attempt, _retry_after(e), rand=self._rand
                )
                attempt += 1
                self.stats.retries += 1
                logger.warning(
                    f"⏳ {self.name}: {error_class.value} error ({e}), retrying in "
                    f"{delay:.1f}s (attempt {attempt}/{self.retry_policy.max_retries})"
                )
                self._sleep(delay)
                continue

            self.stats.successful_requests += 1
            return result

    def _wait_for_slot(self) -> None:
        now = self._clock()
        if self._last_dispatch is not None:
            wait = self._last_dispatch + self.interval - now
            if wait > 0:
                logger.debug(f"{self.name}: waiting {wait:.2f}s for rate limit slot")
                self._sleep(wait)
                now = self._clock()
        self._last_dispatch = now

    def update_config(
        self,
        requests_per_minute: int | None = None,
        retry_policy: RetryPolicy | None = None,
        **retry_overrides: Any,
    ) -> None:
        """Change the request budget or retry policy at runtime."""
        with self._cond:
            if requests_per_minute is not None:
                if requests_per_minute < 1:
                    raise ValueError("requests_per_minute must be at least 1")
                self.requests_per_minute = requests_per_minute
            if retry_policy is not None:
                self.retry_policy = retry_policy
            if retry_overrides:
                self.retry_policy = replace(self.retry_policy, **retry_overrides)
        logger.info(
            f"{self.name}: rate limiter set to {self.requests_per_minute} req/min, "
            f"{self.retry_policy.max_retries} retries"
        )

    def status(self) -> dict[str, Any]:
        """Current queue and statistics snapshot."""
        return {
            "name": self.name,
            "queue_length": self.queue_length,
            "requests_per_minute": self.requests_per_minute,
            "interval_seconds": self.interval,
            "max_retries": self.retry_policy.max_retries,
            "total_requests": self.stats.total_requests,
            "successful_requests": self.stats.successful_requests,
            "failed_requests": self.stats.failed_requests,
            "rate_limit_hits": self.stats.rate_limit_hits,
            "retries": self.stats.retries,
            "average_wait_ms": round(self.stats.average_wait_ms, 1),
        }
