"""OAuth2 token lifecycle for the accounting API.

``TokenManager`` owns the access and refresh tokens. Callers ask for a valid
access token before each request; the manager refreshes proactively when the
token expires within five minutes, and only one refresh is ever in flight.
"""

import base64
import logging
import secrets
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import httpx
from pydantic import BaseModel, ConfigDict

from ..errors import AuthenticationError, LedgerSyncError, TransientNetworkError
from ..ratelimit import RateLimiter
from .base import raise_for_response

logger = logging.getLogger(__name__)

EXPIRY_BUFFER = timedelta(minutes=5)
DEFAULT_SCOPES = (
    "offline_access accounting.transactions accounting.contacts accounting.settings"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OAuthToken(BaseModel):
    """Access/refresh token pair."""

    model_config = ConfigDict(frozen=True)

    access_token: str = ""
    refresh_token: str = ""
    expires_at: datetime | None = None
    scope: str | None = None
    token_type: str = "Bearer"

    def needs_refresh(self, now: datetime, buffer: timedelta = EXPIRY_BUFFER) -> bool:
        """True when there is no access token or it expires within ``buffer``."""
        if not self.access_token:
            return True
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at - now < buffer


class TokenManager:
    """Authorization code exchange and single-flight token refresh."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        identity_url: str = "https://identity.xero.com",
        authorize_url: str = "https://login.xero.com/identity/connect/authorize",
        scopes: str = DEFAULT_SCOPES,
        token: OAuthToken | None = None,
        rate_limiter: RateLimiter | None = None,
        on_refresh: Callable[[OAuthToken], None] | None = None,
        clock: Callable[[], datetime] = _utcnow,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the token manager.

        Args:
            client_id: OAuth2 client ID
            client_secret: OAuth2 client secret
            redirect_uri: Redirect URI registered with the provider
            identity_url: Identity service root hosting ``/connect/token``
            authorize_url: Consent page URL
            scopes: Space separated scopes to request
            token: Previously stored token, possibly only a refresh token
            rate_limiter: Limiter for the identity API
            on_refresh: Called with every newly issued token
            clock: Current UTC time, injectable for tests
            timeout: Request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.authorize_url = authorize_url
        self.scopes = scopes
        self.rate_limiter = rate_limiter or RateLimiter("identity", requests_per_minute=30)
        self.on_refresh = on_refresh
        self.refresh_count = 0

        self._token = token
        self._clock = clock
        self._lock = threading.RLock()
        self._client = httpx.Client(
            base_url=identity_url.rstrip("/"), timeout=timeout, transport=transport
        )

    @property
    def token(self) -> OAuthToken | None:
        return self._token

    def set_token(self, token: OAuthToken) -> None:
        with self._lock:
            self._token = token
        logger.info(f"Set accounting access token, expires at: {token.expires_at}")

    def authorization_url(self, state: str | None = None) -> tuple[str, str]:
        """Build the consent URL the user must visit once.

        Returns:
            tuple[str, str]: The URL and the ``state`` value to verify on callback
        """
        state = state or secrets.token_urlsafe(16)
        url = httpx.URL(
            self.authorize_url,
            params={
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": self.scopes,
                "state": state,
            },
        )
        return str(url), state

    def exchange_code(self, code: str) -> OAuthToken:
        """Exchange an authorization code for tokens."""
        if not code:
            raise AuthenticationError("Authorization code is required")
        with self._lock:
            token = self._request_token(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                }
            )
        logger.info(f"✅ Obtained accounting access token, expires at: {token.expires_at}")
        return token

    def refresh(self) -> OAuthToken:
        """Refresh the access token using the stored refresh token.

        Raises:
            AuthenticationError: If no refresh token is available or the
                provider refuses it
        """
        with self._lock:
            if self._token is None or not self._token.refresh_token:
                raise AuthenticationError(
                    "No refresh token available. Run 'ledgersync auth url' to authorize."
                )
            token = self._request_token(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": self._token.refresh_token,
                }
            )
            self.refresh_count += 1
            logger.info(f"🔄 Refreshed accounting access token, expires at: {token.expires_at}")
            return token

    def ensure_valid_token(self) -> str:
        """Return a usable access token, refreshing first if needed.

        Concurrent callers share a single refresh: the expiry is re-checked
        after the lock is acquired.
        """
        token = self._token
        if token is not None and not token.needs_refresh(self._clock()):
            return token.access_token

        with self._lock:
            token = self._token
            if token is not None and not token.needs_refresh(self._clock()):
                return token.access_token
            if token is None:
                raise AuthenticationError(
                    "No access token available. Please authenticate first."
                )
            logger.info("Access token is expired or expiring soon, refreshing...")
            return self.refresh().access_token

    def _request_token(self, form: dict[str, str]) -> OAuthToken:
        credentials = base64.b64encode(
            f"{self.client_id}:{self.client_secret}".encode()
        ).decode()

        def call() -> httpx.Response:
            try:
                response = self._client.post(
                    "/connect/token",
                    data=form,
                    headers={"Authorization": f"Basic {credentials}"},
                )
            except httpx.TransportError as e:
                raise TransientNetworkError(f"Token request failed: {e}") from e
            if response.status_code in (400, 401):
                raise AuthenticationError(
                    f"Token request rejected ({response.status_code}): {response.text[:200]}",
                    status_code=response.status_code,
                )
            raise_for_response(response, "Identity")
            return response

        try:
            body = self.rate_limiter.submit(call).json()
        except LedgerSyncError:
            logger.error(f"❌ Token request ({form['grant_type']}) failed")
            raise

        expires_in = body.get("expires_in")
        token = OAuthToken(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or (
                self._token.refresh_token if self._token else ""
            ),
            expires_at=(
                self._clock() + timedelta(seconds=int(expires_in))
                if expires_in is not None
                else None
            ),
            scope=body.get("scope"),
            token_type=body.get("token_type", "Bearer"),
        )
        self._token = token
        if self.on_refresh is not None:
            self.on_refresh(token)
        return token

    def close(self) -> None:
        self._client.close()
