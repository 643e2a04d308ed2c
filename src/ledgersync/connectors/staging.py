"""Client for the staging store (Xano).

The staging store is the source of truth for sync state: it holds every
transaction pulled from the ledger, keyed uniquely by the ledger transaction
ID, plus the category and payee mapping tables.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from typing import Any

import httpx

from ..errors import NotFoundError
from ..ratelimit import RateLimiter
from ..schemas import (
    BulkStoreResult,
    BulkUpdateResult,
    CategoryMapping,
    LedgerTransaction,
    MappingBatch,
    MappingUpsertResult,
    MissingMappingsReport,
    PayeeMapping,
    StoreOutcome,
    Transaction,
    TransactionStatus,
)
from .base import BaseApiClient

logger = logging.getLogger(__name__)


def _mapping_update_body(transaction: Transaction) -> dict[str, Any]:
    ready = transaction.has_account and transaction.has_contact
    return {
        "xero_account_id": transaction.accounting_account_ref,
        "xero_account_code": transaction.accounting_account_code,
        "xero_contact_id": transaction.accounting_contact_ref,
        "status": (
            TransactionStatus.MAPPED.value if ready else TransactionStatus.PENDING.value
        ),
    }


def _import_update_body(
    accounting_txn_id: str, reference: str, imported_at: datetime | None
) -> dict[str, Any]:
    return {
        "xero_transaction_id": accounting_txn_id,
        "xero_reference": reference,
        "xero_imported_date": (imported_at or datetime.now()).isoformat(),
        "status": TransactionStatus.IMPORTED.value,
    }


class StagingStoreClient(BaseApiClient):
    """Read and write sync state in the staging store."""

    api_name = "Staging"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        rate_limiter: RateLimiter | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        super().__init__(
            api_url,
            rate_limiter or RateLimiter("staging", requests_per_minute=18),
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    # Transactions

    def create_transaction(self, ledger_transaction: LedgerTransaction) -> StoreOutcome:
        """Idempotently store a ledger transaction.

        The store upserts on the ledger transaction ID. A repeated call returns
        the existing record unchanged instead of creating a second row.

        Returns:
            StoreOutcome: The staged record and whether it was newly created
        """
        response = self.request(
            "POST", "/transactions", json=ledger_transaction.to_staging_payload()
        )
        body = response.json()
        duplicate = bool(body.pop("duplicate", False)) if isinstance(body, dict) else False
        record = body.get("transaction", body) if isinstance(body, dict) else body
        transaction = Transaction.model_validate(record)

        created = response.status_code == 201 and not duplicate
        if created:
            logger.debug(
                f"Stored transaction {transaction.ledger_id} -> staging ID {transaction.staging_id}"
            )
        else:
            logger.debug(f"Transaction {transaction.ledger_id} already staged")
        return StoreOutcome(transaction=transaction, created=created)

    def bulk_store_transactions(
        self, ledger_transactions: Sequence[LedgerTransaction]
    ) -> BulkStoreResult:
        if not ledger_transactions:
            return BulkStoreResult()

        body = self.post(
            "/transactions/bulk",
            json={"transactions": [t.to_staging_payload() for t in ledger_transactions]},
        )
        result = BulkStoreResult.model_validate(body)
        logger.info(
            f"Bulk stored {len(result.stored)} transactions, skipped "
            f"{len(result.duplicates)} duplicates, {len(result.errors)} errors"
        )
        return result

    def update_transaction_mapping(self, transaction: Transaction) -> None:
        self.put(
            f"/transactions/{transaction.staging_id}/mapping",
            json=_mapping_update_body(transaction),
        )

    def bulk_update_transaction_mappings(
        self, transactions: Sequence[Transaction]
    ) -> BulkUpdateResult:
        if not transactions:
            return BulkUpdateResult()
        updates = [
            {"xano_id": t.staging_id, **_mapping_update_body(t)} for t in transactions
        ]
        return BulkUpdateResult.model_validate(
            self.put("/transactions/bulk-mapping", json={"updates": updates})
        )

    def mark_transaction_failed(self, staging_id: int, error_message: str) -> None:
        self.put(
            f"/transactions/{staging_id}/status",
            json={
                "status": TransactionStatus.FAILED.value,
                "error_message": error_message,
            },
        )
        logger.warning(f"Marked staging transaction {staging_id} as failed: {error_message}")

    def bulk_mark_transactions_failed(
        self, failures: Sequence[tuple[int, str]]
    ) -> BulkUpdateResult:
        """Mark several transactions failed in one call.

        Args:
            failures: ``(staging_id, error_message)`` pairs
        """
        if not failures:
            return BulkUpdateResult()
        updates = [
            {
                "xano_id": staging_id,
                "status": TransactionStatus.FAILED.value,
                "error_message": message,
            }
            for staging_id, message in failures
        ]
        result = BulkUpdateResult.model_validate(
            self.put("/transactions/bulk-status", json={"updates": updates})
        )
        logger.warning(
            f"Bulk marked {len(result.updated)} transactions as failed, "
            f"{len(result.errors)} errors"
        )
        return result

    def update_transaction_import(
        self,
        staging_id: int,
        accounting_txn_id: str,
        reference: str,
        imported_at: datetime | None = None,
    ) -> None:
        self.put(
            f"/transactions/{staging_id}/xero-import",
            json=_import_update_body(accounting_txn_id, reference, imported_at),
        )
        logger.info(
            f"Recorded import of staging transaction {staging_id} as {accounting_txn_id}"
        )

    def bulk_update_transaction_imports(
        self, imports: Sequence[tuple[int, str, str]]
    ) -> BulkUpdateResult:
        """Record several accounting imports in one call.

        Args:
            imports: ``(staging_id, accounting_txn_id, reference)`` triples
        """
        if not imports:
            return BulkUpdateResult()
        now = datetime.now()
        updates = [
            {"xano_id": staging_id, **_import_update_body(txn_id, reference, now)}
            for staging_id, txn_id, reference in imports
        ]
        return BulkUpdateResult.model_validate(
            self.put("/transactions/bulk-xero-import", json={"updates": updates})
        )

    # Mappings

    def get_category_mapping(self, category_id: str) -> CategoryMapping | None:
        """Active mapping for a ledger category, or None when unmapped."""
        try:
            body = self.get(f"/category-mappings/{category_id}")
        except NotFoundError:
            return None
        if not body:
            return None
        mapping = CategoryMapping.model_validate(body)
        return mapping if mapping.active else None

    def get_payee_mapping(self, payee_id: str) -> PayeeMapping | None:
        """Active mapping for a ledger payee, or None when unmapped."""
        try:
            body = self.get(f"/payee-mappings/{payee_id}")
        except NotFoundError:
            return None
        if not body:
            return None
        mapping = PayeeMapping.model_validate(body)
        return mapping if mapping.active else None

    def upsert_category_mapping(self, mapping: CategoryMapping) -> CategoryMapping:
        body = self.post("/category-mappings", json=mapping.to_payload())
        logger.debug(
            f"Upserted category mapping: {mapping.name} -> "
            f"{mapping.accounting_account_name or 'unmapped'}"
        )
        return CategoryMapping.model_validate(body) if body else mapping

    def upsert_payee_mapping(self, mapping: PayeeMapping) -> PayeeMapping:
        body = self.post("/payee-mappings", json=mapping.to_payload())
        logger.debug(
            f"Upserted payee mapping: {mapping.name} -> "
            f"{mapping.accounting_contact_name or 'unmapped'}"
        )
        return PayeeMapping.model_validate(body) if body else mapping

    def bulk_upsert_category_mappings(
        self, mappings: Sequence[CategoryMapping]
    ) -> MappingUpsertResult:
        if not mappings:
            return MappingUpsertResult()
        body = self.post(
            "/category-mappings/bulk",
            json={"mappings": [m.to_payload() for m in mappings]},
        )
        result = MappingUpsertResult.model_validate(body or {})
        logger.info(
            f"Bulk upserted category mappings: {len(result.created)} created, "
            f"{len(result.updated)} updated, {len(result.errors)} errors"
        )
        return result

    def bulk_upsert_payee_mappings(
        self, mappings: Sequence[PayeeMapping]
    ) -> MappingUpsertResult:
        if not mappings:
            return MappingUpsertResult()
        body = self.post(
            "/payee-mappings/bulk",
            json={"mappings": [m.to_payload() for m in mappings]},
        )
        result = MappingUpsertResult.model_validate(body or {})
        logger.info(
            f"Bulk upserted payee mappings: {len(result.created)} created, "
            f"{len(result.updated)} updated, {len(result.errors)} errors"
        )
        return result

    def batch_get_mappings(
        self, category_ids: Iterable[str | None], payee_ids: Iterable[str | None]
    ) -> MappingBatch:
        """Fetch the mappings for many categories and payees in one call."""
        unique_categories = sorted({c for c in category_ids if c})
        unique_payees = sorted({p for p in payee_ids if p})
        if not unique_categories and not unique_payees:
            return MappingBatch()

        body = self.post(
            "/mappings/batch",
            json={"category_ids": unique_categories, "payee_ids": unique_payees},
        )
        batch = MappingBatch.model_validate(body)
        logger.debug(
            f"Batch retrieved {len(batch.category_mappings)} category mappings and "
            f"{len(batch.payee_mappings)} payee mappings"
        )
        return batch

    def get_all_mappings(self) -> MappingBatch:
        """Every category and payee mapping, inactive ones included.

        The batch endpoint returns all mappings when no IDs are given.
        """
        body = self.post("/mappings/batch", json={"category_ids": [], "payee_ids": []})
        return MappingBatch.model_validate(body or {})

    # Queries

    def get_pending_transactions(self, limit: int = 100) -> list[Transaction]:
        body = self.get("/transactions/pending", params={"limit": limit})
        return [Transaction.model_validate(t) for t in body]

    def get_transactions_for_reprocessing(
        self,
        limit: int = 100,
        statuses: Sequence[TransactionStatus | str] = (
            TransactionStatus.PENDING,
            TransactionStatus.FAILED,
        ),
    ) -> list[Transaction]:
        status_values = [TransactionStatus(s).value for s in statuses]
        body = self.get(
            "/transactions/reprocess",
            params={"limit": limit, "statuses": ",".join(status_values)},
        )
        transactions = [Transaction.model_validate(t) for t in body]
        logger.debug(f"Found {len(transactions)} transactions ready for reprocessing")
        return transactions

    def get_transactions_with_missing_mappings(
        self, limit: int = 100
    ) -> MissingMappingsReport:
        body = self.get(
            "/transactions/missing-mappings",
            params={
                "include_category_missing": "true",
                "include_payee_missing": "true",
                "limit": limit,
            },
        )
        return MissingMappingsReport.model_validate(body)

    def get_sync_statistics(
        self, since: date | None = None, until: date | None = None
    ) -> dict[str, Any]:
        params: dict[str, str] = {}
        if since:
            params["since"] = since.isoformat()
        if until:
            params["until"] = until.isoformat()
        return self.get("/transactions/statistics", params=params)

    def test_connection(self) -> bool:
        try:
            self.get_sync_statistics()
        except Exception as e:
            logger.error(f"❌ Staging store connection test failed: {e}")
            return False
        logger.info("✅ Staging store connection OK")
        return True
