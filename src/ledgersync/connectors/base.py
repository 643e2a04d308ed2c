"""Shared HTTP plumbing for the ledger, staging and accounting clients.

Each client owns one ``httpx.Client`` and one ``RateLimiter``. Responses are
translated into the LedgerSync error taxonomy inside the rate-limited call so
the limiter can decide whether to retry.
"""

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from ..errors import (
    AuthenticationError,
    FatalProviderError,
    NotFoundError,
    RateLimitError,
    TransientNetworkError,
)
from ..ratelimit import RateLimiter, parse_retry_after

logger = logging.getLogger(__name__)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "Message", "error", "Detail", "detail"):
            if body.get(key):
                return str(body[key])
    return str(body)[:500]


def raise_for_response(response: httpx.Response, api_name: str) -> None:
    """Raise the taxonomy error matching a failed response.

    Raises:
        RateLimitError: HTTP 429
        TransientNetworkError: HTTP 5xx
        NotFoundError: HTTP 404
        AuthenticationError: HTTP 401/403
        FatalProviderError: Any other 4xx
    """
    status = response.status_code
    if status < 400:
        return

    detail = _error_detail(response)
    message = f"{api_name} API error {status}: {detail}"
    context = {"method": response.request.method, "url": str(response.request.url)}

    if status == 429:
        raise RateLimitError(
            message,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            context=context,
        )
    if status >= 500:
        raise TransientNetworkError(message, status_code=status, context=context)
    if status == 404:
        raise NotFoundError(message, status_code=status, context=context)
    if status in (401, 403):
        raise AuthenticationError(message, status_code=status, context=context)
    raise FatalProviderError(message, status_code=status, context=context)


class BaseApiClient:
    """Rate-limited JSON client for one external API."""

    api_name = "HTTP"

    def __init__(
        self,
        base_url: str,
        rate_limiter: RateLimiter,
        headers: Mapping[str, str] | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: API root; request paths are joined onto it
            rate_limiter: Limiter every request is submitted through
            headers: Default headers sent with each request
            timeout: Request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                **(headers or {}),
            },
            timeout=timeout,
            transport=transport,
        )

    def request_headers(self) -> dict[str, str]:
        """Per-request headers, resolved at dispatch time."""
        return {}

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """Send one request through the rate limiter.

        Returns:
            httpx.Response: A successful (< 400) response

        Raises:
            LedgerSyncError: Translated failure once retries are exhausted
        """

        def call() -> httpx.Response:
            try:
                response = self._client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers=self.request_headers(),
                )
            except httpx.TransportError as e:
                raise TransientNetworkError(
                    f"{self.api_name} request failed: {e}",
                    context={"method": method, "path": path},
                ) from e
            raise_for_response(response, self.api_name)
            return response

        logger.debug(f"{self.api_name} {method} {path}")
        return self.rate_limiter.submit(call)

    def get(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        return self.request("GET", path, params=params).json()

    def post(self, path: str, json: Any = None) -> Any:
        return self.request("POST", path, json=json).json()

    def put(self, path: str, json: Any = None) -> Any:
        return self.request("PUT", path, json=json).json()

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
