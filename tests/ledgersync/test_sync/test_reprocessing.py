# ruff: noqa: S101
"""Tests for reprocessing parked transactions and retrying failed imports."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from conftest import staged_txn

from ledgersync.config import SyncConfig
from ledgersync.errors import TransientNetworkError
from ledgersync.mapping import MappingResolver
from ledgersync.schemas import (
    AccountingAccount,
    CategoryMapping,
    LedgerCategory,
    MappingBatch,
    SyncErrorType,
    TransactionStatus,
)
from ledgersync.sync.importer import TransactionImporter
from ledgersync.sync.reprocessing import (
    ReprocessingEngine,
    count_missing,
    needs_reprocessing,
)

NOW = datetime(2025, 1, 20, 12, 0, tzinfo=timezone.utc)


def _parked(ledger_id: str = "t1", staging_id: int = 101, **overrides):
    data = {
        "status": TransactionStatus.FAILED,
        "error_message": "Missing category mapping(s)",
        "category_ref": "cat-os",
        "category_name": "Office Supplies",
        "accounting_contact_ref": "con-1",
    }
    data.update(overrides)
    return staged_txn(ledger_id, staging_id, **data)


def _engine(staging, accounting, ledger=None, config: SyncConfig | None = None):
    return ReprocessingEngine(
        staging,
        MappingResolver(staging, accounting),
        TransactionImporter(staging, ledger=ledger, accounting=accounting),
        config,
        ledger=ledger,
        now=lambda tz=None: NOW,
    )


class TestEligibility:
    """Which staged transactions are picked up again."""

    @pytest.mark.unit
    def test_needs_reprocessing(self) -> None:
        assert needs_reprocessing(_parked())
        assert needs_reprocessing(
            _parked(accounting_account_ref="acc-1", error_message="Missing payee mapping(s)")
        )
        assert not needs_reprocessing(
            _parked(accounting_account_ref="acc-1", error_message="Accounting import failed")
        )
        assert not needs_reprocessing(_parked(status=TransactionStatus.IMPORTED))

    @pytest.mark.unit
    def test_count_missing_is_per_distinct_id(self) -> None:
        categories, payees = count_missing(
            [
                _parked("t1"),
                _parked("t2"),
                _parked("t3", category_ref="cat-x", accounting_contact_ref=None),
            ]
        )
        assert categories == {"cat-os": 2, "cat-x": 1}
        assert payees == {"payee-1": 1}


class TestReprocess:
    """Resolving missing mappings and importing what became ready."""

    @pytest.mark.unit
    def test_exact_match_resolves_and_imports(self, staging, accounting) -> None:
        staging.get_transactions_for_reprocessing.return_value = [_parked()]
        accounting.search_accounts.return_value = [
            AccountingAccount(id="acc-os", name="Office Supplies", code="400")
        ]

        result = _engine(staging, accounting).reprocess()

        assert result.transactions_found == 1
        assert result.transactions_eligible == 1
        assert result.mappings_resolved == 1
        assert result.transactions_resolved == 1
        assert result.transactions_imported == 1
        assert result.missing_categories == {}
        assert result.success
        persisted = staging.upsert_category_mapping.call_args.args[0]
        assert persisted.ledger_category_id == "cat-os"
        assert persisted.accounting_account_id == "acc-os"
        txn, reference = accounting.create_bank_transaction.call_args.args
        assert txn.accounting_account_ref == "acc-os"
        assert reference == "Xano-101"
        accounting.create_account.assert_not_called()

    @pytest.mark.unit
    def test_each_missing_entity_resolved_once(self, staging, accounting) -> None:
        staging.get_transactions_for_reprocessing.return_value = [
            _parked("t1", 101),
            _parked("t2", 102),
            _parked("t3", 103),
        ]
        accounting.search_accounts.return_value = [
            AccountingAccount(id="acc-os", name="Office Supplies")
        ]

        result = _engine(staging, accounting).reprocess()

        assert accounting.search_accounts.call_count == 1
        assert staging.upsert_category_mapping.call_count == 1
        assert result.transactions_imported == 3

    @pytest.mark.unit
    def test_existing_mapping_used_without_search(self, staging, accounting) -> None:
        staging.get_transactions_for_reprocessing.return_value = [_parked()]
        staging.batch_get_mappings.return_value = MappingBatch(
            category_mappings=[
                CategoryMapping(ledger_category_id="cat-os", accounting_account_id="acc-9")
            ]
        )

        result = _engine(staging, accounting).reprocess()

        accounting.search_accounts.assert_not_called()
        assert result.mappings_resolved == 0
        assert result.transactions_imported == 1

    @pytest.mark.unit
    def test_unresolved_stays_failed(self, staging, accounting) -> None:
        staging.get_transactions_for_reprocessing.return_value = [_parked()]
        config = SyncConfig(auto_create_missing_entities=False)

        result = _engine(staging, accounting, config=config).reprocess()

        assert result.transactions_failed == 1
        assert result.missing_categories == {"cat-os": 1}
        assert result.errors[0].type == SyncErrorType.MISSING_MAPPINGS
        assert result.errors[0].message == (
            "Still missing category mapping(s) after reprocessing"
        )
        assert result.success

    @pytest.mark.unit
    def test_without_auto_resolve(self, staging, accounting) -> None:
        staging.get_transactions_for_reprocessing.return_value = [_parked()]

        result = _engine(staging, accounting).reprocess(auto_resolve=False)

        accounting.search_accounts.assert_not_called()
        assert result.transactions_failed == 1

    @pytest.mark.unit
    def test_dry_run_writes_nothing(self, staging, accounting) -> None:
        staging.get_transactions_for_reprocessing.return_value = [_parked()]
        accounting.search_accounts.return_value = [
            AccountingAccount(id="acc-os", name="Office Supplies")
        ]

        result = _engine(staging, accounting).reprocess(dry_run=True)

        assert result.dry_run
        assert result.transactions_resolved == 1
        staging.upsert_category_mapping.assert_not_called()
        staging.bulk_update_transaction_mappings.assert_not_called()
        accounting.create_bank_transaction.assert_not_called()

    @pytest.mark.unit
    def test_name_falls_back_to_ledger(
        self, staging, accounting, ledger: MagicMock
    ) -> None:
        staging.get_transactions_for_reprocessing.return_value = [
            _parked(category_name=None)
        ]
        ledger.get_categories.return_value = [
            LedgerCategory(id="cat-os", name="Office Supplies")
        ]
        ledger.get_payees.return_value = []
        accounting.search_accounts.return_value = [
            AccountingAccount(id="acc-os", name="Office Supplies")
        ]

        result = _engine(staging, accounting, ledger=ledger).reprocess()

        accounting.search_accounts.assert_called_with(
            "Office Supplies", exact=True, limit=1
        )
        assert result.transactions_imported == 1

    @pytest.mark.unit
    def test_nothing_eligible(self, staging, accounting) -> None:
        staging.get_transactions_for_reprocessing.return_value = [
            _parked(accounting_account_ref="acc-1", error_message="Accounting import failed")
        ]

        result = _engine(staging, accounting).reprocess()

        assert result.transactions_found == 1
        assert result.transactions_eligible == 0
        staging.batch_get_mappings.assert_not_called()

    @pytest.mark.unit
    def test_query_failure_propagates(self, staging, accounting) -> None:
        staging.get_transactions_for_reprocessing.side_effect = TransientNetworkError("down")

        with pytest.raises(TransientNetworkError):
            _engine(staging, accounting).reprocess()


class TestRetryFailedImports:
    """Retrying imports that failed in the accounting system."""

    @pytest.mark.unit
    def test_retries_recent_fully_mapped_failures(self, staging, accounting) -> None:
        staging.get_transactions_for_reprocessing.return_value = [
            _parked(
                "t1",
                101,
                accounting_account_ref="acc-1",
                error_message="Accounting import failed: 503",
                updated_at=NOW - timedelta(hours=2),
            ),
            _parked(
                "t2",
                102,
                accounting_account_ref="acc-1",
                error_message="Accounting import failed: 503",
                updated_at=NOW - timedelta(hours=30),
            ),
            _parked("t3", 103),
        ]

        result = _engine(staging, accounting).retry_failed_imports()

        assert result.transactions_found == 3
        assert result.transactions_eligible == 1
        assert result.transactions_imported == 1
        assert accounting.create_bank_transaction.call_args.args[0].ledger_id == "t1"
        staging.get_transactions_for_reprocessing.assert_called_once_with(
            limit=25, statuses=[TransactionStatus.FAILED]
        )

    @pytest.mark.unit
    def test_provider_error_mentioning_missing_is_retried(
        self, staging, accounting
    ) -> None:
        staging.get_transactions_for_reprocessing.return_value = [
            _parked(
                accounting_account_ref="acc-1",
                error_message="Accounting import failed: Account code is missing",
                updated_at=NOW - timedelta(hours=1),
            )
        ]

        result = _engine(staging, accounting).retry_failed_imports()

        assert result.transactions_eligible == 1
        assert result.transactions_imported == 1
        accounting.find_bank_transaction_by_reference.assert_called_once_with("Xano-101")

    @pytest.mark.unit
    def test_dry_run(self, staging, accounting) -> None:
        staging.get_transactions_for_reprocessing.return_value = [
            _parked(accounting_account_ref="acc-1", error_message="Accounting import failed")
        ]

        result = _engine(staging, accounting).retry_failed_imports(dry_run=True)

        assert result.transactions_eligible == 1
        assert result.transactions_imported == 0
        accounting.create_bank_transaction.assert_not_called()
