"""API clients for the ledger, staging store and accounting system."""

from .accounting import AccountingClient, build_bank_transaction
from .base import BaseApiClient
from .ledger import LedgerClient, append_tags, status_tags
from .oauth import OAuthToken, TokenManager
from .staging import StagingStoreClient

__all__ = [
    "AccountingClient",
    "BaseApiClient",
    "LedgerClient",
    "OAuthToken",
    "StagingStoreClient",
    "TokenManager",
    "append_tags",
    "build_bank_transaction",
    "status_tags",
]
