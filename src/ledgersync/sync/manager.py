"""Build the sync services from settings.

``SyncManager`` owns the API clients for one profile and wires the shared
resolver and importer into the orchestrator and the reprocessing engine.
"""

import logging
from collections.abc import Callable
from pathlib import Path

from dotenv import set_key

from ..config import LedgerSyncSettings, RetryConfig, get_settings
from ..connectors.accounting import AccountingClient
from ..connectors.ledger import LedgerClient
from ..connectors.oauth import OAuthToken, TokenManager
from ..connectors.staging import StagingStoreClient
from ..mapping import MappingResolver, ResolutionPolicy
from ..mapping_manager import MappingManager
from ..ratelimit import RateLimiter, RetryPolicy
from .importer import TransactionImporter
from .orchestrator import SyncOrchestrator
from .reprocessing import ReprocessingEngine

logger = logging.getLogger(__name__)

REFRESH_TOKEN_ENV = "LEDGERSYNC_ACCOUNTING__REFRESH_TOKEN"
ACCESS_TOKEN_ENV = "LEDGERSYNC_ACCOUNTING__ACCESS_TOKEN"
TOKEN_EXPIRES_ENV = "LEDGERSYNC_ACCOUNTING__TOKEN_EXPIRES_AT"


def retry_policy_from_config(config: RetryConfig) -> RetryPolicy:
    return RetryPolicy(
        max_retries=config.max_retries,
        base_backoff=config.base_backoff,
        max_jitter=config.max_jitter,
        max_backoff=config.max_backoff,
    )


def save_token(env_file: Path, token: OAuthToken) -> None:
    """Write an OAuth token to a dotenv file so the next run can reuse it."""
    env_file.touch(exist_ok=True)
    set_key(str(env_file), REFRESH_TOKEN_ENV, token.refresh_token)
    set_key(str(env_file), ACCESS_TOKEN_ENV, token.access_token)
    set_key(
        str(env_file),
        TOKEN_EXPIRES_ENV,
        token.expires_at.isoformat() if token.expires_at else "",
    )
    logger.info(f"✅ Saved accounting tokens to {env_file}")


def build_token_manager(settings: LedgerSyncSettings) -> TokenManager:
    """Token manager seeded from the stored tokens of a profile."""
    config = settings.accounting
    token = None
    if config.refresh_token or config.access_token:
        token = OAuthToken(
            access_token=config.access_token,
            refresh_token=config.refresh_token,
            expires_at=config.token_expires_at,
        )

    on_refresh: Callable[[OAuthToken], None] | None = None
    if config.persist_rotated_tokens:
        env_file = settings.env_file_path()

        def persist(new_token: OAuthToken) -> None:
            # Refresh tokens are single use, the old one is now dead
            try:
                save_token(env_file, new_token)
            except OSError as e:
                logger.warning(f"⚠️  Could not persist refreshed token to {env_file}: {e}")

        on_refresh = persist

    return TokenManager(
        client_id=config.client_id,
        client_secret=config.client_secret,
        redirect_uri=config.redirect_uri,
        identity_url=config.identity_url,
        authorize_url=config.authorize_url,
        scopes=config.scopes,
        token=token,
        rate_limiter=RateLimiter(
            "identity",
            requests_per_minute=30,
            retry_policy=retry_policy_from_config(settings.retry),
        ),
        on_refresh=on_refresh,
        timeout=config.timeout,
    )


class SyncManager:
    """Clients and services for one configuration profile."""

    def __init__(self, settings: LedgerSyncSettings | None = None):
        """Initialize every client from settings.

        Args:
            settings: Settings to use. Defaults to the current profile's.

        Raises:
            ValueError: If required credentials are missing
        """
        self.settings = settings or get_settings()
        self.settings.validate_required_credentials()

        retry = retry_policy_from_config(self.settings.retry)
        ledger_cfg = self.settings.ledger
        staging_cfg = self.settings.staging
        accounting_cfg = self.settings.accounting
        sync_cfg = self.settings.sync

        self.ledger = LedgerClient(
            ledger_cfg.server_url,
            ledger_cfg.api_key,
            rate_limiter=RateLimiter(
                "ledger",
                requests_per_minute=ledger_cfg.requests_per_minute,
                retry_policy=retry,
            ),
            timeout=ledger_cfg.timeout,
        )
        self.staging = StagingStoreClient(
            staging_cfg.api_url,
            staging_cfg.api_key,
            rate_limiter=RateLimiter(
                "staging",
                requests_per_minute=staging_cfg.requests_per_minute,
                retry_policy=retry,
            ),
            timeout=staging_cfg.timeout,
        )

        self.accounting: AccountingClient | None = None
        if accounting_cfg.client_id and accounting_cfg.tenant_id:
            self.accounting = AccountingClient(
                build_token_manager(self.settings),
                accounting_cfg.tenant_id,
                api_url=accounting_cfg.api_url,
                rate_limiter=RateLimiter(
                    "accounting",
                    requests_per_minute=accounting_cfg.requests_per_minute,
                    retry_policy=retry,
                ),
                bank_account_id=accounting_cfg.bank_account_id or None,
                timeout=accounting_cfg.timeout,
            )
        else:
            logger.info("Accounting credentials not configured, mappings cannot be resolved")

        self.resolver = MappingResolver(
            self.staging,
            self.accounting,
            ResolutionPolicy(
                auto_create=sync_cfg.auto_create_missing_entities,
                match_threshold=sync_cfg.match_threshold,
                candidate_limit=sync_cfg.candidate_limit,
                account_type=sync_cfg.account_type,
            ),
        )
        self.importer = TransactionImporter(
            self.staging,
            ledger=self.ledger,
            accounting=self.accounting,
            reference_prefix=sync_cfg.reference_prefix,
            partial_mapping_policy=sync_cfg.partial_mapping_policy,
        )
        self.orchestrator = SyncOrchestrator(
            self.ledger, self.staging, self.resolver, self.importer, sync_cfg
        )
        self.reprocessing = ReprocessingEngine(
            self.staging, self.resolver, self.importer, sync_cfg, ledger=self.ledger
        )
        self.mappings = MappingManager(
            self.staging,
            self.accounting,
            ledger=self.ledger,
            backup_dir=sync_cfg.mapping_backup_dir,
        )

    def test_connections(self) -> dict[str, bool]:
        results = {
            "ledger": self.ledger.test_connection(),
            "staging": self.staging.test_connection(),
        }
        if self.accounting is not None:
            results["accounting"] = self.accounting.validate_connection()
        return results

    def close(self) -> None:
        self.ledger.close()
        self.staging.close()
        if self.accounting is not None:
            self.accounting.close()

    def __enter__(self) -> "SyncManager":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
