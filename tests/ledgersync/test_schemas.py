# ruff: noqa: S101
"""Tests for wire schemas, the readiness rule and result summaries."""

from __future__ import annotations

from decimal import Decimal

import pytest
from conftest import ledger_txn, staged_txn

from ledgersync.schemas import (
    BulkItemError,
    CategoryMapping,
    MappingBatch,
    SyncErrorRecord,
    SyncErrorType,
    SyncResult,
    Transaction,
    TransactionStatus,
    build_reference,
    is_mapping_error,
    is_ready_for_import,
    missing_mapping_reason,
)


class TestLedgerTransaction:
    """Ledger records and their staging payload."""

    @pytest.mark.unit
    def test_staging_payload(self) -> None:
        payload = ledger_txn(amount=-4250, notes=None, imported_description="CAFE").to_staging_payload()
        assert payload == {
            "actual_transaction_id": "t1",
            "transaction_date": "2025-01-15",
            "amount": -42.5,
            "description": "CAFE",
            "actual_category_id": "cat-1",
            "actual_payee_id": "payee-1",
        }

    @pytest.mark.unit
    def test_blank_refs_become_none(self) -> None:
        txn = ledger_txn(category="  ", payee="")
        assert txn.category is None
        assert txn.payee is None

    @pytest.mark.unit
    def test_timestamp_dates_are_truncated(self) -> None:
        txn = ledger_txn(date="2025-01-15T00:00:00.000Z")
        assert txn.date.isoformat() == "2025-01-15"


class TestTransaction:
    """Staged transaction parsing from the staging store."""

    @pytest.mark.unit
    def test_parses_wire_names(self) -> None:
        txn = Transaction.model_validate(
            {
                "id": 7,
                "actual_transaction_id": "t9",
                "transaction_date": "2025-02-01T00:00:00Z",
                "amount": -12.345,
                "description": None,
                "xero_account_id": "",
                "xero_contact_id": "c-1",
                "status": "failed",
                "error_message": "Missing category mapping(s)",
            }
        )
        assert txn.staging_id == 7
        assert txn.ledger_id == "t9"
        assert txn.amount == Decimal("-12.35")
        assert txn.description == ""
        assert txn.accounting_account_ref is None
        assert txn.has_contact
        assert not txn.has_account
        assert txn.status is TransactionStatus.FAILED

    @pytest.mark.unit
    def test_readiness_rule(self) -> None:
        ready = staged_txn(accounting_account_ref="a-1", accounting_contact_ref="c-1")
        assert is_ready_for_import(ready)
        assert not is_ready_for_import(ready.model_copy(update={"staging_id": None}))
        assert not is_ready_for_import(
            ready.model_copy(update={"accounting_contact_ref": "   "})
        )
        assert not is_ready_for_import(
            ready.model_copy(update={"status": TransactionStatus.IMPORTED})
        )
        assert is_ready_for_import(
            ready.model_copy(update={"status": TransactionStatus.FAILED})
        )


class TestMappings:
    """Mapping records and batch lookups."""

    @pytest.mark.unit
    def test_inactive_mapping_is_unresolved(self) -> None:
        mapping = CategoryMapping.model_validate(
            {"actual_category_id": "cat-1", "xero_account_id": "a-1", "is_active": False}
        )
        assert not mapping.is_resolved

    @pytest.mark.unit
    def test_batch_indexes_by_ledger_id(self) -> None:
        batch = MappingBatch.model_validate(
            {
                "categoryMappings": [
                    {"actual_category_id": "cat-1", "xero_account_id": "a-1"}
                ],
                "payeeMappings": [{"actual_payee_id": "p-1", "xero_contact_id": ""}],
            }
        )
        assert batch.categories_by_id()["cat-1"].is_resolved
        assert not batch.payees_by_id()["p-1"].is_resolved

    @pytest.mark.unit
    def test_mapping_payload_uses_wire_names(self) -> None:
        payload = CategoryMapping(
            ledger_category_id="cat-1", name="Food", accounting_account_id="a-1"
        ).to_payload()
        assert payload["actual_category_id"] == "cat-1"
        assert payload["xero_account_id"] == "a-1"
        assert payload["is_active"] is True

    @pytest.mark.unit
    def test_bulk_item_error_keys(self) -> None:
        assert BulkItemError.model_validate({"xano_id": 5, "error": "bad"}).key == "5"
        assert BulkItemError.model_validate({"message": "x"}).key is None


class TestReasonsAndResults:
    """Failure reasons, references and result summaries."""

    @pytest.mark.unit
    def test_missing_mapping_reasons(self) -> None:
        assert missing_mapping_reason(True, True) == "Missing category and payee mapping(s)"
        assert missing_mapping_reason(False, True) == "Missing payee mapping(s)"
        assert (
            missing_mapping_reason(True, False, still=True)
            == "Still missing category mapping(s) after reprocessing"
        )

    @pytest.mark.unit
    def test_is_mapping_error(self) -> None:
        assert is_mapping_error("Missing payee mapping(s)")
        assert is_mapping_error("Still missing category and payee mapping(s) after reprocessing")
        assert not is_mapping_error("Accounting import failed: 500")
        assert not is_mapping_error("Accounting import failed: Contact mapping is missing")
        assert not is_mapping_error("missing payee mapping(s)")
        assert not is_mapping_error(None)

    @pytest.mark.unit
    def test_reference(self) -> None:
        assert build_reference("Xano", 42) == "Xano-42"

    @pytest.mark.unit
    def test_missing_mappings_do_not_fail_a_run(self) -> None:
        result = SyncResult(
            errors=[
                SyncErrorRecord(type=SyncErrorType.MISSING_MAPPINGS, message="Missing payee")
            ]
        )
        assert result.success
        assert result.total_errors == 1

        result.errors.append(
            SyncErrorRecord(type=SyncErrorType.STORE_ERROR, message="boom", transaction_id="t1")
        )
        assert not result.success
        assert str(result.system_errors[0]) == "STORE_ERROR [t1]: boom"
        assert any("1 system, 1 missing mappings" in line for line in result.summary())
