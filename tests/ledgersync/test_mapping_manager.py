# ruff: noqa: S101
"""Tests for bulk mapping maintenance: export, import, backup and consistency."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from ledgersync.errors import TransientNetworkError, ValidationError
from ledgersync.mapping import MappingKind
from ledgersync.mapping_manager import (
    BACKUP_METADATA_FILE,
    ExportFormat,
    MappingManager,
    load_mappings,
    parse_mappings,
)
from ledgersync.schemas import (
    AccountingAccount,
    BulkItemError,
    CategoryMapping,
    LedgerCategory,
    LedgerPayee,
    MappingBatch,
    MappingUpsertResult,
    PayeeMapping,
)

NOW = datetime(2025, 1, 20, 12, 0)


def _category(cid: str, account: str | None = "acc-1", **extra) -> CategoryMapping:
    return CategoryMapping(
        ledger_category_id=cid,
        name=f"Category {cid}",
        accounting_account_id=account,
        **extra,
    )


def _payee(pid: str, contact: str | None = "con-1", **extra) -> PayeeMapping:
    return PayeeMapping(
        ledger_payee_id=pid, name=f"Payee {pid}", accounting_contact_id=contact, **extra
    )


@pytest.fixture
def manager(
    staging: MagicMock, accounting: MagicMock, ledger: MagicMock, tmp_path: Path
) -> MappingManager:
    accounting.get_account.return_value = AccountingAccount(id="acc-1", name="Office")
    ledger.get_categories.return_value = []
    ledger.get_payees.return_value = []
    return MappingManager(
        staging,
        accounting,
        ledger=ledger,
        backup_dir=tmp_path / "backups",
        now=lambda: NOW,
    )


class TestParsing:
    """Raw rows into mapping models."""

    @pytest.mark.unit
    def test_csv_strings(self) -> None:
        rows = [
            {
                "actual_category_id": "cat-1",
                "actual_category_name": "Office",
                "xero_account_id": "",
                "is_active": "False",
            }
        ]

        [mapping] = parse_mappings(MappingKind.CATEGORY, rows)

        assert mapping.accounting_account_id is None
        assert mapping.active is False

    @pytest.mark.unit
    def test_every_bad_row_reported(self) -> None:
        rows = [
            {"actual_payee_name": "No id"},
            {"actual_payee_id": "p-1", "actual_payee_name": "Fine"},
            {"actual_payee_id": "p-2", "is_active": ["not", "a", "bool"]},
        ]
        with pytest.raises(ValidationError, match=r"Row 1: .*Row 3: "):
            parse_mappings(MappingKind.PAYEE, rows)

    @pytest.mark.unit
    def test_load_combined_json(self, tmp_path: Path) -> None:
        path = tmp_path / "all.json"
        path.write_text(
            json.dumps(
                {
                    "categories": [{"actual_category_id": "cat-1", "actual_category_name": "A"}],
                    "payees": [{"actual_payee_id": "p-1", "actual_payee_name": "B"}],
                }
            )
        )

        loaded = load_mappings(path)

        assert loaded[MappingKind.CATEGORY][0].ledger_category_id == "cat-1"
        assert loaded[MappingKind.PAYEE][0].ledger_payee_id == "p-1"

    @pytest.mark.unit
    def test_load_needs_a_kind(self, tmp_path: Path) -> None:
        path = tmp_path / "edited.csv"
        path.write_text("actual_payee_id,actual_payee_name\np-1,B\n")

        with pytest.raises(ValidationError, match="pass a kind"):
            load_mappings(path)
        assert load_mappings(path, MappingKind.PAYEE)[MappingKind.PAYEE][0].name == "B"

    @pytest.mark.unit
    def test_unsupported_file_type(self, tmp_path: Path) -> None:
        path = tmp_path / "category-mappings.xlsx"
        path.write_text("")
        with pytest.raises(ValidationError, match="Unsupported"):
            load_mappings(path)


class TestBulkUpdate:
    """Batched upserts with per-item fallback."""

    @pytest.mark.unit
    def test_batches_and_counts(self, manager: MappingManager, staging: MagicMock) -> None:
        staging.bulk_upsert_category_mappings.side_effect = [
            MappingUpsertResult(created=[1] * 20, updated=[1] * 5),
            MappingUpsertResult(
                created=[1] * 4,
                errors=[BulkItemError(key="cat-29", message="archived account")],
            ),
        ]
        mappings = [_category(f"cat-{i}") for i in range(30)]

        summary = manager.bulk_update(MappingKind.CATEGORY, mappings, create_backup=False)

        assert [len(c.args[0]) for c in staging.bulk_upsert_category_mappings.call_args_list] == [
            25,
            5,
        ]
        assert summary.processed == 30
        assert summary.created == 24
        assert summary.updated == 5
        assert summary.failed == 1
        assert summary.errors == ["cat-29: archived account"]

    @pytest.mark.unit
    def test_rejected_batch_upserted_individually(
        self, manager: MappingManager, staging: MagicMock
    ) -> None:
        staging.bulk_upsert_payee_mappings.side_effect = TransientNetworkError("503")
        staging.upsert_payee_mapping.side_effect = [
            _payee("p-1"),
            ValueError("contact archived"),
        ]

        summary = manager.bulk_update(
            MappingKind.PAYEE,
            [_payee("p-1"), _payee("p-2")],
            validate_references=False,
            create_backup=False,
        )

        assert staging.upsert_payee_mapping.call_count == 2
        assert summary.processed == 1
        assert summary.failed == 1
        assert summary.errors == ["Payee p-2: contact archived"]

    @pytest.mark.unit
    def test_invalid_rows_never_sent(
        self, manager: MappingManager, staging: MagicMock
    ) -> None:
        nameless = CategoryMapping(ledger_category_id="cat-1")
        with pytest.raises(ValidationError, match="actual_category_name is required"):
            manager.bulk_update(MappingKind.CATEGORY, [nameless])
        with pytest.raises(ValidationError, match="No category mappings"):
            manager.bulk_update(MappingKind.CATEGORY, [])
        staging.bulk_upsert_category_mappings.assert_not_called()

    @pytest.mark.unit
    def test_missing_accounting_references_reported(
        self, manager: MappingManager, accounting: MagicMock
    ) -> None:
        accounting.get_account.side_effect = lambda account_id: (
            None if account_id == "acc-gone" else AccountingAccount(id=account_id, name="x")
        )

        summary = manager.bulk_update(
            MappingKind.CATEGORY,
            [_category("cat-1"), _category("cat-2", "acc-gone"), _category("cat-3", None)],
            create_backup=False,
        )

        assert summary.invalid_references == ["cat-2: acc-gone (not found)"]
        assert accounting.get_account.call_count == 2

    @pytest.mark.unit
    def test_dry_run_writes_nothing(
        self, manager: MappingManager, staging: MagicMock, tmp_path: Path
    ) -> None:
        summary = manager.bulk_update(
            MappingKind.CATEGORY, [_category("cat-1")], dry_run=True
        )

        assert summary.processed == 1
        assert summary.dry_run
        staging.bulk_upsert_category_mappings.assert_not_called()
        assert not (tmp_path / "backups").exists()

    @pytest.mark.unit
    def test_backup_taken_before_update(
        self, manager: MappingManager, staging: MagicMock, tmp_path: Path
    ) -> None:
        staging.get_all_mappings.return_value = MappingBatch(
            category_mappings=[_category("cat-old")]
        )

        manager.bulk_update(MappingKind.CATEGORY, [_category("cat-1")])

        backup = tmp_path / "backups" / "2025-01-20T12-00-00" / "category-mappings.json"
        assert json.loads(backup.read_text())[0]["actual_category_id"] == "cat-old"


class TestExport:
    """Writing stored mappings to files."""

    @pytest.mark.unit
    def test_json_export_skips_inactive(
        self, manager: MappingManager, staging: MagicMock, tmp_path: Path
    ) -> None:
        staging.get_all_mappings.return_value = MappingBatch(
            category_mappings=[_category("cat-1"), _category("cat-2", active=False)],
            payee_mappings=[_payee("p-1")],
        )

        result = manager.export(output=tmp_path / "out")

        path = tmp_path / "out" / "category-mappings-2025-01-20.json"
        assert result.files[MappingKind.CATEGORY] == path
        assert [m["actual_category_id"] for m in json.loads(path.read_text())] == ["cat-1"]
        assert (tmp_path / "out" / "payee-mappings-2025-01-20.json").exists()

    @pytest.mark.unit
    def test_csv_export_reloads(
        self, manager: MappingManager, staging: MagicMock, tmp_path: Path
    ) -> None:
        staging.get_all_mappings.return_value = MappingBatch(
            payee_mappings=[_payee("p-1"), _payee("p-2", None, active=False)]
        )

        result = manager.export(
            [MappingKind.PAYEE],
            include_inactive=True,
            output=tmp_path / "payees.csv",
            fmt=ExportFormat.CSV,
        )

        path = result.files[MappingKind.PAYEE]
        assert path == tmp_path / "payees-payee.csv"
        assert path.read_text().splitlines()[0] == (
            "actual_payee_id,actual_payee_name,xero_contact_id,xero_contact_name,is_active"
        )
        assert load_mappings(path)[MappingKind.PAYEE] == result.payees


class TestBackupRestore:
    """Timestamped backups and restores."""

    @pytest.mark.unit
    def test_backup_includes_inactive_and_metadata(
        self, manager: MappingManager, staging: MagicMock, tmp_path: Path
    ) -> None:
        staging.get_all_mappings.return_value = MappingBatch(
            category_mappings=[_category("cat-1", active=False)],
            payee_mappings=[_payee("p-1"), _payee("p-2")],
        )

        backup = manager.create_backup()

        assert backup.directory == tmp_path / "backups" / "2025-01-20T12-00-00"
        assert backup.counts == {MappingKind.CATEGORY: 1, MappingKind.PAYEE: 2}
        metadata = json.loads((backup.directory / BACKUP_METADATA_FILE).read_text())
        assert metadata["counts"] == {"category": 1, "payee": 2}
        assert metadata["version"] == "1.0"

    @pytest.mark.unit
    def test_restore_upserts_saved_mappings(
        self, manager: MappingManager, staging: MagicMock, tmp_path: Path
    ) -> None:
        saved = [_category("cat-1"), _category("cat-2", None)]
        staging.get_all_mappings.return_value = MappingBatch(category_mappings=saved)
        manager.create_backup([MappingKind.CATEGORY], directory=tmp_path / "saved")
        staging.get_all_mappings.return_value = MappingBatch()

        summary = manager.restore_backup(tmp_path / "saved")

        staging.bulk_upsert_category_mappings.assert_called_once_with(saved)
        staging.bulk_upsert_payee_mappings.assert_not_called()
        assert summary.results[MappingKind.CATEGORY].processed == 2
        assert summary.backup_dir == tmp_path / "backups" / "2025-01-20T12-00-00"

    @pytest.mark.unit
    def test_restore_missing_directory(self, manager: MappingManager, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="not found"):
            manager.restore_backup(tmp_path / "nowhere")


class TestConsistency:
    """Duplicate, orphaned, unmapped and dead references."""

    @pytest.mark.unit
    def test_duplicates_are_errors(
        self, manager: MappingManager, staging: MagicMock, ledger: MagicMock
    ) -> None:
        staging.get_all_mappings.return_value = MappingBatch(
            category_mappings=[
                _category("cat-1", "acc-1"),
                _category("cat-2", "acc-1"),
                _category("cat-3", None),
            ],
            payee_mappings=[_payee("p-1"), _payee("p-gone", "con-2")],
        )
        ledger.get_categories.return_value = [
            LedgerCategory(id=f"cat-{i}", name=f"C{i}") for i in (1, 2, 3)
        ]
        ledger.get_payees.return_value = [LedgerPayee(id="p-1", name="P")]

        report = manager.validate_consistency()

        assert not report.is_valid
        assert report.categories.duplicate_ids == ["acc-1"]
        assert report.categories.unmapped == 1
        assert report.payees.orphaned == ["p-gone"]
        assert report.payees.duplicate_ids == []
        assert len(report.errors) == 1
        assert any("no longer in the ledger" in w for w in report.warnings)
        assert any("not mapped" in w for w in report.warnings)

    @pytest.mark.unit
    def test_dead_references_checked_on_request(
        self, manager: MappingManager, staging: MagicMock, accounting: MagicMock
    ) -> None:
        staging.get_all_mappings.return_value = MappingBatch(
            payee_mappings=[_payee("p-1", "con-gone")]
        )
        accounting.get_contact.return_value = None

        assert manager.validate_consistency(check_orphaned=False).is_valid
        accounting.get_contact.assert_not_called()

        report = manager.validate_consistency(check_references=True, check_orphaned=False)

        assert report.payees.invalid_references == ["p-1: con-gone (not found)"]
        assert not report.is_valid

    @pytest.mark.unit
    def test_ledger_failure_is_a_warning(
        self, manager: MappingManager, ledger: MagicMock
    ) -> None:
        ledger.get_categories.side_effect = TransientNetworkError("timeout")

        report = manager.validate_consistency()

        assert report.is_valid
        assert any("orphaned category" in w for w in report.warnings)
