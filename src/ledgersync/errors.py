"""Error taxonomy shared by every LedgerSync component.

API clients translate HTTP failures into these types so the rate limiter and
the sync pipeline can decide between retrying, parking a transaction and
aborting a run without inspecting raw responses.
"""

from typing import Any


class LedgerSyncError(Exception):
    """Base class for all LedgerSync errors."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.context = context or {}


class ValidationError(LedgerSyncError):
    """Malformed input or configuration, rejected before dispatch."""


class NotFoundError(LedgerSyncError):
    """Requested entity does not exist. Usually a normal unmapped state."""


class RateLimitError(LedgerSyncError):
    """Provider signalled rate limiting (HTTP 429)."""

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        status_code: int | None = 429,
        code: str | None = "RATE_LIMITED",
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, status_code=status_code, code=code, context=context)
        self.retry_after = retry_after


class TransientNetworkError(LedgerSyncError):
    """Connection reset, timeout or 5xx response. Safe to retry."""


class FatalProviderError(LedgerSyncError):
    """Provider rejected the request in a way retrying cannot fix."""


class AuthenticationError(FatalProviderError):
    """Missing, expired or refused credentials."""


class MissingMappingError(LedgerSyncError):
    """Transaction cannot be imported until its mappings are resolved."""

    def __init__(
        self,
        message: str,
        *,
        missing_category: bool = False,
        missing_payee: bool = False,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="MISSING_MAPPINGS", context=context)
        self.missing_category = missing_category
        self.missing_payee = missing_payee
