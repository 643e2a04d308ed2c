"""Client for the budgeting ledger HTTP shim.

The shim exposes the ledger's budget over a small REST API authenticated with
an ``x-api-key`` header. LedgerSync reads reconciled transactions, categories
and payees from it and writes sync status tags back into transaction notes.
"""

import logging
from datetime import date, datetime, time, timezone

import httpx

from ..errors import NotFoundError
from ..ratelimit import RateLimiter
from ..schemas import (
    LedgerCategory,
    LedgerCategoryGroup,
    LedgerPayee,
    LedgerTransaction,
    TransactionStatus,
)
from .base import BaseApiClient

logger = logging.getLogger(__name__)

SYNC_TAG = "#xano"

_STATUS_TAGS: dict[TransactionStatus, tuple[str, ...]] = {
    TransactionStatus.PENDING: (SYNC_TAG,),
    TransactionStatus.MAPPED: (SYNC_TAG, "#mapped"),
    TransactionStatus.IMPORTED: (SYNC_TAG, "#mapped", "#xero"),
    TransactionStatus.FAILED: (SYNC_TAG, "#failed"),
}


def status_tags(status: TransactionStatus) -> str:
    """Tags recording how far a transaction has progressed."""
    return " ".join(_STATUS_TAGS[status])


def append_tags(notes: str | None, tags: str) -> str:
    """Append ``#tags`` to notes without removing existing text.

    Tags already present (case-insensitive) are not repeated.

    Args:
        notes: Current transaction notes
        tags: Space separated tags, e.g. ``"#xano #mapped"``

    Returns:
        str: Updated notes
    """
    existing = (notes or "").strip()
    new_tags = [t for t in tags.split() if t.startswith("#")]
    if not new_tags:
        return existing

    present = {word.lower() for word in existing.split()}
    to_add: list[str] = []
    for tag in new_tags:
        if tag.lower() not in present:
            to_add.append(tag)
            present.add(tag.lower())

    if not to_add:
        return existing
    return f"{existing} {' '.join(to_add)}".strip()


class LedgerClient(BaseApiClient):
    """Read transactions and write sync tags through the ledger shim."""

    api_name = "Ledger"

    def __init__(
        self,
        server_url: str,
        api_key: str,
        rate_limiter: RateLimiter | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        super().__init__(
            server_url,
            rate_limiter or RateLimiter("ledger", requests_per_minute=60),
            headers={"x-api-key": api_key},
            timeout=timeout,
            transport=transport,
        )

    def get_budgets(self) -> list[dict]:
        return self.get("/budgets").get("budgets", [])

    def get_reconciled_transactions(
        self, category_group_id: str | None, since: date | None = None
    ) -> list[LedgerTransaction]:
        """Fetch reconciled transactions for a category group.

        The shim filters by group and date; reconciliation is filtered here
        since cleared-but-unreconciled transactions are returned as well.

        Args:
            category_group_id: Ledger category group to fetch
            since: Only transactions on or after this date

        Returns:
            list[LedgerTransaction]: Reconciled transactions
        """
        params: dict[str, str] = {}
        if category_group_id:
            params["categoryGroupId"] = category_group_id
        if since:
            params["since"] = (
                datetime.combine(since, time.min, tzinfo=timezone.utc)
                .isoformat()
                .replace("+00:00", "Z")
            )

        logger.info(
            f"Fetching reconciled transactions for category group {category_group_id} "
            f"since {since.isoformat() if since else 'beginning'}"
        )
        payload = self.get("/transactions", params=params)
        transactions = [
            LedgerTransaction.model_validate(t) for t in payload.get("transactions", [])
        ]
        reconciled = [t for t in transactions if t.reconciled]
        logger.info(
            f"Found {len(reconciled)} reconciled of {len(transactions)} transactions"
        )
        return reconciled

    def get_categories(self, group_id: str | None = None) -> list[LedgerCategory]:
        categories = [
            LedgerCategory.model_validate(c)
            for c in self.get("/categories").get("categories", [])
        ]
        if group_id:
            categories = [c for c in categories if c.group_id == group_id]
            if not categories:
                logger.warning(f"No categories found for group {group_id}")
        return categories

    def get_category_groups(self) -> list[LedgerCategoryGroup]:
        return [
            LedgerCategoryGroup.model_validate(g)
            for g in self.get("/category-groups").get("groups", [])
        ]

    def find_category_group_by_name(self, name: str) -> LedgerCategoryGroup | None:
        """Look up a category group by its exact name."""
        groups = self.get_category_groups()
        for group in groups:
            if group.name == name:
                logger.info(f"Found category group '{name}' with ID: {group.id}")
                return group

        logger.warning(
            f"Category group '{name}' not found. Available groups: "
            f"{', '.join(g.name for g in groups)}"
        )
        return None

    def get_payees(self) -> list[LedgerPayee]:
        return [
            LedgerPayee.model_validate(p)
            for p in self.get("/payees").get("payees", [])
        ]

    def get_transaction(self, transaction_id: str) -> LedgerTransaction | None:
        for raw in self.get("/transactions").get("transactions", []):
            if raw.get("id") == transaction_id:
                return LedgerTransaction.model_validate(raw)
        return None

    def update_transaction_notes(
        self, transaction_id: str, tags: str, current_notes: str | None = None
    ) -> str:
        """Append sync tags to a transaction's notes.

        Args:
            transaction_id: Ledger transaction ID
            tags: Space separated tags to add
            current_notes: Notes already known to the caller; fetched if None

        Returns:
            str: The notes as written

        Raises:
            NotFoundError: If the transaction does not exist
        """
        if current_notes is None:
            current = self.get_transaction(transaction_id)
            if current is None:
                raise NotFoundError(f"Ledger transaction {transaction_id} not found")
            current_notes = current.notes

        updated = append_tags(current_notes, tags)
        if updated == (current_notes or "").strip():
            logger.debug(f"Tags already present on {transaction_id}")
            return updated

        self.put(f"/transactions/{transaction_id}", json={"notes": updated})
        logger.debug(f"Updated notes for ledger transaction {transaction_id}")
        return updated

    def tag_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        current_notes: str | None = None,
    ) -> str:
        return self.update_transaction_notes(
            transaction_id, status_tags(status), current_notes
        )

    def test_connection(self) -> bool:
        """Check the shim answers with the configured key."""
        try:
            budgets = self.get_budgets()
        except Exception as e:
            logger.error(f"❌ Ledger connection test failed: {e}")
            return False
        logger.info(f"✅ Ledger connection OK ({len(budgets)} budgets)")
        return True
