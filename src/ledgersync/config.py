"""Centralized configuration management for LedgerSync.

This module provides a Pydantic Settings-based configuration system that
consolidates the ledger, staging store and accounting system connection
settings together with sync behaviour, retry policy and logging.
"""

import re
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, DotEnvSettingsSource, SettingsConfigDict

_PROFILE_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


class PartialMappingPolicy(str, Enum):
    """What to do with a transaction whose mappings are only half resolved."""

    MARK_FAILED = "mark_failed"
    LEAVE_PENDING = "leave_pending"


class LedgerConfig(BaseModel):
    """Budgeting ledger HTTP shim settings."""

    model_config = ConfigDict(frozen=True)

    server_url: str = Field(default="", description="Ledger shim base URL")
    api_key: str = Field(default="", description="Ledger shim API key")
    timeout: float = Field(
        default=30.0, ge=1.0, le=300.0, description="Request timeout in seconds"
    )
    requests_per_minute: int = Field(
        default=60, ge=1, le=600, description="Ledger request budget"
    )


class StagingConfig(BaseModel):
    """Staging store (Xano) settings."""

    model_config = ConfigDict(frozen=True)

    api_url: str = Field(default="", description="Staging store API base URL")
    api_key: str = Field(default="", description="Staging store API key")
    timeout: float = Field(default=30.0, ge=1.0, le=300.0)
    requests_per_minute: int = Field(
        default=18,
        ge=1,
        le=60,
        description="Staging store request budget (free tier allows 20)",
    )

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """Ensure the API URL is absolute when provided."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("Staging API URL must start with http:// or https://")
        return v.rstrip("/")


class AccountingConfig(BaseModel):
    """Accounting system (Xero) OAuth2 and API settings."""

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(default="", description="OAuth2 client ID")
    client_secret: str = Field(default="", description="OAuth2 client secret")
    tenant_id: str = Field(default="", description="Organisation tenant ID")
    redirect_uri: str = Field(
        default="http://localhost:8080/callback", description="OAuth2 redirect URI"
    )
    refresh_token: str = Field(default="", description="Stored OAuth2 refresh token")
    access_token: str = Field(default="", description="Optional seeded access token")
    token_expires_at: datetime | None = Field(
        default=None, description="Expiry of the seeded access token"
    )
    api_url: str = Field(default="https://api.xero.com/api.xro/2.0")
    identity_url: str = Field(default="https://identity.xero.com")
    authorize_url: str = Field(
        default="https://login.xero.com/identity/connect/authorize"
    )
    scopes: str = Field(
        default="offline_access accounting.transactions accounting.contacts accounting.settings",
        description="Space separated OAuth2 scopes",
    )
    bank_account_id: str = Field(
        default="", description="Bank account that imported transactions post to"
    )
    persist_rotated_tokens: bool = Field(
        default=True,
        description="Write refreshed refresh tokens back to the profile env file",
    )
    timeout: float = Field(default=30.0, ge=1.0, le=300.0)
    requests_per_minute: int = Field(
        default=60, ge=1, le=60, description="Accounting API request budget"
    )


class RetryConfig(BaseModel):
    """Retry and backoff settings applied by every rate limiter."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0, le=10)
    base_backoff: float = Field(
        default=1.0, ge=0.0, le=30.0, description="Base backoff in seconds"
    )
    max_jitter: float = Field(default=1.0, ge=0.0, le=10.0)
    max_backoff: float = Field(
        default=30.0, ge=1.0, le=300.0, description="Backoff ceiling in seconds"
    )


class SyncConfig(BaseModel):
    """Sync run behaviour."""

    model_config = ConfigDict(frozen=True)

    category_group_id: str = Field(
        default="", description="Ledger category group to sync"
    )
    category_group_name: str = Field(
        default="", description="Ledger category group name, used when no ID is set"
    )
    sync_days_back: int = Field(default=7, ge=1, le=30)
    batch_size: int = Field(default=10, ge=1, le=50)
    dry_run: bool = Field(default=True, description="Compute without side effects")
    sync_to_accounting: bool = Field(
        default=False, description="Create bank transactions in the accounting system"
    )
    auto_create_missing_entities: bool = Field(default=True)
    match_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    candidate_limit: int = Field(default=10, ge=1, le=100)
    partial_mapping_policy: PartialMappingPolicy = Field(
        default=PartialMappingPolicy.MARK_FAILED
    )
    reference_prefix: str = Field(default="Xano", min_length=1, max_length=20)
    account_type: str = Field(
        default="EXPENSE", description="Type used for auto-created accounts"
    )
    mapping_backup_dir: Path = Field(
        default=Path("backups/mappings"), description="Where mapping backups are written"
    )


class LoggingConfig(BaseModel):
    """Logging configuration settings."""

    model_config = ConfigDict(frozen=True)

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_to_file: bool = Field(default=False, description="Enable file logging")
    log_file_path: Path = Field(
        default=Path("logs/ledgersync.log"), description="Path to log file"
    )
    max_file_size_mb: int = Field(default=50, ge=1, le=1000)
    backup_count: int = Field(default=5, ge=1, le=50)


class LedgerSyncSettings(BaseSettings):
    """Main application settings with environment variable integration.

    Environment variables are loaded with the LEDGERSYNC_ prefix.
    For nested configs, use double underscores: LEDGERSYNC_STAGING__API_KEY

    Profile Support:
    - Loads from .env.{profile} files (e.g., .env.dev, .env.prod)
    - Falls back to .env
    """

    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    staging: StagingConfig = Field(default_factory=StagingConfig)
    accounting: AccountingConfig = Field(default_factory=AccountingConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    profile: str = Field(default="default", description="Configuration profile name")

    @field_validator("profile")
    @classmethod
    def validate_profile_name(cls, v: str) -> str:
        """Ensure profile name is safe for use as a filename."""
        if not v:
            raise ValueError("Profile name cannot be empty")
        if not _PROFILE_PATTERN.match(v):
            raise ValueError(
                "Profile name must contain only alphanumeric characters, "
                "dashes, and underscores"
            )
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Load the profile-specific env file instead of the default one."""
        init_dict = init_settings.init_kwargs if init_settings else {}
        profile = init_dict.get("profile", "default")  # type: ignore[reportUnknownMemberType]

        profile_env_file = Path(f".env.{profile}")
        env_file = str(profile_env_file) if profile_env_file.exists() else ".env"

        custom_dotenv = DotEnvSettingsSource(
            settings_cls,
            env_file=env_file,
            env_file_encoding="utf-8",
        )

        return (
            init_settings,
            env_settings,
            custom_dotenv,
            file_secret_settings,
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LEDGERSYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    def env_file_path(self) -> Path:
        """Return the env file this profile reads from and writes tokens to."""
        profile_env_file = Path(f".env.{self.profile}")
        return profile_env_file if profile_env_file.exists() else Path(".env")

    def validate_required_credentials(self) -> None:
        """Validate that the credentials needed for a sync run are present.

        Raises:
            ValueError: Listing every missing setting
        """
        errors: list[str] = []

        if not self.ledger.server_url:
            errors.append("LEDGERSYNC_LEDGER__SERVER_URL is required")
        if not self.ledger.api_key:
            errors.append("LEDGERSYNC_LEDGER__API_KEY is required")
        if not self.staging.api_url:
            errors.append("LEDGERSYNC_STAGING__API_URL is required")
        if not self.staging.api_key:
            errors.append("LEDGERSYNC_STAGING__API_KEY is required")
        if not (self.sync.category_group_id or self.sync.category_group_name):
            errors.append(
                "LEDGERSYNC_SYNC__CATEGORY_GROUP_ID or "
                "LEDGERSYNC_SYNC__CATEGORY_GROUP_NAME is required"
            )
        if self.sync.sync_to_accounting:
            if not self.accounting.client_id:
                errors.append("LEDGERSYNC_ACCOUNTING__CLIENT_ID is required")
            if not self.accounting.client_secret:
                errors.append("LEDGERSYNC_ACCOUNTING__CLIENT_SECRET is required")
            if not self.accounting.tenant_id:
                errors.append("LEDGERSYNC_ACCOUNTING__TENANT_ID is required")

        if errors:
            raise ValueError(f"Missing required configuration: {', '.join(errors)}")


# Global settings instances - lazy loaded per profile
_settings_cache: dict[str, LedgerSyncSettings] = {}
_current_profile: str = "default"


def _check_profile(profile: str) -> None:
    if not profile:
        raise ValueError("Profile name cannot be empty")
    if not _PROFILE_PATTERN.match(profile):
        raise ValueError(
            f"Invalid profile: {profile}. "
            "Profile name must contain only alphanumeric characters, dashes, and underscores"
        )


def get_settings(profile: str | None = None) -> LedgerSyncSettings:
    """Get the settings instance for the specified profile.

    Settings are loaded once per profile and cached. Credentials are not
    validated here because commands such as ``auth url`` only need part of
    them; call ``validate_required_credentials`` before a sync run.

    Args:
        profile: Profile name. Defaults to the current profile.

    Returns:
        LedgerSyncSettings: The configuration instance for the profile

    Raises:
        ValueError: If the configuration is invalid
    """
    if profile is None:
        profile = _current_profile

    if profile in _settings_cache:
        return _settings_cache[profile]

    try:
        settings = LedgerSyncSettings(profile=profile)
    except Exception as e:
        raise ValueError(f"Configuration error for profile '{profile}': {e}") from e

    _settings_cache[profile] = settings
    return settings


def set_current_profile(profile: str) -> None:
    """Set the current active profile.

    Raises:
        ValueError: If profile name contains invalid characters
    """
    global _current_profile

    _check_profile(profile)
    _current_profile = profile


def get_current_profile() -> str:
    """Get the current active profile."""
    return _current_profile


def reload_settings(profile: str | None = None) -> LedgerSyncSettings:
    """Reload settings from environment variables.

    Args:
        profile: Profile to reload. If None, reloads current profile.

    Returns:
        LedgerSyncSettings: The reloaded configuration instance
    """
    if profile is None:
        profile = _current_profile

    _settings_cache.pop(profile, None)
    return get_settings(profile)


def clear_settings_cache() -> None:
    """Drop every cached settings instance."""
    _settings_cache.clear()


def get_sync_config() -> SyncConfig:
    """Get the sync configuration for the current profile."""
    return get_settings().sync


def get_logging_config() -> LoggingConfig:
    """Get the logging configuration for the current profile."""
    return get_settings().logging
