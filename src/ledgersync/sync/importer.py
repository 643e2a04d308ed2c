"""Evaluate, import and tag staged transactions.

This stage is shared by the sync orchestrator and the reprocessing engine so
both apply the same readiness rule, the same failure reasons and the same
bulk-with-fallback persistence.
"""

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from ..config import PartialMappingPolicy
from ..connectors.accounting import AccountingClient
from ..connectors.ledger import LedgerClient
from ..connectors.staging import StagingStoreClient
from ..errors import MissingMappingError
from ..schemas import (
    BulkUpdateResult,
    CategoryMapping,
    PayeeMapping,
    SyncErrorRecord,
    SyncErrorType,
    Transaction,
    TransactionStatus,
    build_reference,
    is_ready_for_import,
    missing_mapping_reason,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Staged rows in these states may already exist in the accounting system
_PREVIOUSLY_ATTEMPTED = (TransactionStatus.MAPPED, TransactionStatus.FAILED)


def run_bulk(
    items: Sequence[T],
    bulk: Callable[[Sequence[T]], BulkUpdateResult],
    single: Callable[[T], None],
    key: Callable[[T], str],
    label: str,
) -> list[tuple[T, str]]:
    """Run a bulk update, retrying rejected items one at a time.

    If the bulk call fails outright every item is retried individually. If it
    reports per-item errors only those items are retried; an error without an
    identifiable key retries the whole batch, which is safe because the updates
    are idempotent.

    Returns:
        list: ``(item, reason)`` for every item that failed individually too
    """
    if not items:
        return []

    try:
        result = bulk(items)
    except Exception as e:
        logger.warning(f"⚠️  Bulk {label} failed ({e}), falling back to per-item calls")
        retry = list(items)
    else:
        if not result.errors:
            return []
        error_keys = {err.key for err in result.errors}
        if None in error_keys:
            retry = list(items)
        else:
            retry = [item for item in items if key(item) in error_keys]
        logger.warning(
            f"⚠️  Bulk {label} rejected {len(result.errors)} items, retrying individually"
        )

    failures: list[tuple[T, str]] = []
    for item in retry:
        try:
            single(item)
        except Exception as e:
            logger.error(f"❌ {label} failed for {key(item)}: {e}")
            failures.append((item, str(e)))
    return failures


def attach_mappings(
    transaction: Transaction,
    categories: Mapping[str, CategoryMapping],
    payees: Mapping[str, PayeeMapping],
) -> Transaction:
    """Copy resolved accounting references from mappings onto a transaction."""
    update: dict[str, object] = {}

    category = categories.get(transaction.category_ref or "")
    if category is not None and category.is_resolved:
        update["accounting_account_ref"] = category.accounting_account_id
        update["accounting_account_code"] = category.account_code
    if category is not None and category.name and not transaction.category_name:
        update["category_name"] = category.name

    payee = payees.get(transaction.payee_ref or "")
    if payee is not None and payee.is_resolved:
        update["accounting_contact_ref"] = payee.accounting_contact_id
    if payee is not None and payee.name and not transaction.payee_name:
        update["payee_name"] = payee.name

    return transaction.model_copy(update=update) if update else transaction


def require_mappings(transaction: Transaction, reprocessing: bool = False) -> None:
    """Check that a staged transaction can be imported.

    Raises:
        MissingMappingError: If the accounting account or contact is missing;
            its message is the reason stored on the transaction
    """
    if is_ready_for_import(transaction):
        return
    missing_category = not transaction.has_account
    missing_payee = not transaction.has_contact
    raise MissingMappingError(
        missing_mapping_reason(missing_category, missing_payee, still=reprocessing),
        missing_category=missing_category,
        missing_payee=missing_payee,
        context={"ledger_id": transaction.ledger_id},
    )


@dataclass
class ImportOutcome:
    """What happened to each transaction handed to the importer."""

    ready: list[Transaction] = field(default_factory=list)
    blocked: list[Transaction] = field(default_factory=list)
    left_pending: list[Transaction] = field(default_factory=list)
    imported: list[Transaction] = field(default_factory=list)
    failed: list[Transaction] = field(default_factory=list)
    errors: list[SyncErrorRecord] = field(default_factory=list)

    @property
    def final(self) -> list[Transaction]:
        """Every transaction with the status it ended up in."""
        ended = {t.ledger_id for t in self.imported} | {t.ledger_id for t in self.failed}
        mapped = [t for t in self.ready if t.ledger_id not in ended]
        return [*self.imported, *self.failed, *mapped, *self.left_pending]


class TransactionImporter:
    """Moves staged transactions from pending to mapped, imported or failed."""

    def __init__(
        self,
        staging: StagingStoreClient,
        ledger: LedgerClient | None = None,
        accounting: AccountingClient | None = None,
        reference_prefix: str = "Xano",
        partial_mapping_policy: PartialMappingPolicy = PartialMappingPolicy.MARK_FAILED,
    ):
        self.staging = staging
        self.ledger = ledger
        self.accounting = accounting
        self.reference_prefix = reference_prefix
        self.partial_mapping_policy = partial_mapping_policy

    def process(
        self,
        transactions: Sequence[Transaction],
        *,
        dry_run: bool = False,
        import_enabled: bool = True,
        reprocessing: bool = False,
        tag_ledger: bool = True,
        ledger_notes: Mapping[str, str | None] | None = None,
    ) -> ImportOutcome:
        """Evaluate readiness, persist mapping state, import and tag.

        Args:
            transactions: Staged transactions with mappings already attached
            dry_run: Compute outcomes without writing anything
            import_enabled: Create bank transactions for ready transactions
            reprocessing: Word failure reasons for a reprocessing pass
            tag_ledger: Write status tags back to the ledger
            ledger_notes: Current ledger notes by ledger ID, saves a lookup
                per tag

        Returns:
            ImportOutcome: Per-transaction results and itemized errors
        """
        outcome = ImportOutcome()
        to_fail: list[tuple[Transaction, str]] = []
        mapping_updates: list[Transaction] = []
        attempted = {
            t.staging_id for t in transactions if t.status in _PREVIOUSLY_ATTEMPTED
        }

        for txn in transactions:
            if txn.status == TransactionStatus.IMPORTED:
                logger.debug(f"Skipping already imported transaction {txn.ledger_id}")
                continue
            if txn.staging_id is None:
                outcome.errors.append(
                    SyncErrorRecord.for_transaction(
                        SyncErrorType.STORE_ERROR, "Transaction has no staging ID", txn
                    )
                )
                continue

            try:
                require_mappings(txn, reprocessing=reprocessing)
            except MissingMappingError as e:
                missing = e
            else:
                outcome.ready.append(
                    txn.model_copy(
                        update={"status": TransactionStatus.MAPPED, "error_message": None}
                    )
                )
                continue

            reason = missing.message
            outcome.blocked.append(txn)
            outcome.errors.append(
                SyncErrorRecord.for_transaction(SyncErrorType.MISSING_MAPPINGS, reason, txn)
            )

            partial = missing.missing_category != missing.missing_payee
            if partial and self.partial_mapping_policy is PartialMappingPolicy.LEAVE_PENDING:
                outcome.left_pending.append(
                    txn.model_copy(update={"status": TransactionStatus.PENDING})
                )
                mapping_updates.append(txn)
            else:
                to_fail.append((txn, reason))

        mapping_updates.extend(outcome.ready)
        outcome.failed.extend(
            t.model_copy(update={"status": TransactionStatus.FAILED, "error_message": r})
            for t, r in to_fail
        )

        if outcome.blocked:
            logger.warning(
                f"⚠️  {len(outcome.blocked)} transactions blocked by missing mappings"
            )

        if dry_run:
            logger.info(
                f"[dry run] {len(outcome.ready)} ready, {len(to_fail)} would be marked failed"
            )
            return outcome

        self._mark_failed(to_fail, outcome)
        self._update_mappings(mapping_updates, outcome)

        if import_enabled and self.accounting is not None:
            self._import(outcome, attempted)
        elif outcome.ready:
            logger.info(
                f"Accounting import disabled; {len(outcome.ready)} transactions left mapped"
            )

        if tag_ledger:
            self._tag(outcome, ledger_notes or {})
        return outcome

    def _mark_failed(
        self, failures: list[tuple[Transaction, str]], outcome: ImportOutcome
    ) -> None:
        rejected = run_bulk(
            failures,
            bulk=lambda items: self.staging.bulk_mark_transactions_failed(
                [(t.staging_id, reason) for t, reason in items]
            ),
            single=lambda item: self.staging.mark_transaction_failed(
                item[0].staging_id, item[1]
            ),
            key=lambda item: str(item[0].staging_id),
            label="status update",
        )
        for (txn, _), error in rejected:
            outcome.errors.append(
                SyncErrorRecord.for_transaction(
                    SyncErrorType.STATUS_UPDATE_ERROR, error, txn
                )
            )

    def _update_mappings(
        self, transactions: list[Transaction], outcome: ImportOutcome
    ) -> None:
        rejected = run_bulk(
            transactions,
            bulk=self.staging.bulk_update_transaction_mappings,
            single=self.staging.update_transaction_mapping,
            key=lambda t: str(t.staging_id),
            label="mapping update",
        )
        for txn, error in rejected:
            outcome.errors.append(
                SyncErrorRecord.for_transaction(
                    SyncErrorType.MAPPING_UPDATE_ERROR, error, txn
                )
            )

    def _import(self, outcome: ImportOutcome, attempted: set[int | None]) -> None:
        assert self.accounting is not None
        created: list[tuple[Transaction, str, str]] = []
        import_failures: list[tuple[Transaction, str]] = []

        for txn in outcome.ready:
            reference = build_reference(self.reference_prefix, txn.staging_id)
            try:
                result = None
                if txn.staging_id in attempted:
                    result = self.accounting.find_bank_transaction_by_reference(reference)
                if result is not None:
                    logger.info(
                        f"🔄 {txn.ledger_id} already imported as {result.id} "
                        f"(Reference: {reference}), recording it"
                    )
                else:
                    result = self.accounting.create_bank_transaction(txn, reference)
            except Exception as e:
                message = f"Accounting import failed: {e}"
                logger.error(f"❌ {message} ({txn.ledger_id})")
                import_failures.append((txn, message))
                outcome.errors.append(
                    SyncErrorRecord.for_transaction(SyncErrorType.IMPORT_ERROR, message, txn)
                )
                continue
            created.append((txn, result.id, reference))

        rejected = run_bulk(
            created,
            bulk=lambda items: self.staging.bulk_update_transaction_imports(
                [(t.staging_id, txn_id, ref) for t, txn_id, ref in items]
            ),
            single=lambda item: self.staging.update_transaction_import(
                item[0].staging_id, item[1], item[2]
            ),
            key=lambda item: str(item[0].staging_id),
            label="import update",
        )
        for (txn, txn_id, _), error in rejected:
            # Imported in the accounting system; the reference identifies it
            outcome.errors.append(
                SyncErrorRecord.for_transaction(
                    SyncErrorType.IMPORT_UPDATE_ERROR,
                    f"Imported as {txn_id} but staging update failed: {error}",
                    txn,
                )
            )

        outcome.imported.extend(
            txn.model_copy(
                update={
                    "status": TransactionStatus.IMPORTED,
                    "accounting_txn_id": txn_id,
                    "accounting_reference": reference,
                }
            )
            for txn, txn_id, reference in created
        )
        outcome.failed.extend(
            t.model_copy(update={"status": TransactionStatus.FAILED, "error_message": r})
            for t, r in import_failures
        )
        self._mark_failed(import_failures, outcome)

        logger.info(
            f"Imported {len(created)} transactions, {len(import_failures)} import failures"
        )

    def _tag(self, outcome: ImportOutcome, notes: Mapping[str, str | None]) -> None:
        if self.ledger is None:
            return
        for txn in outcome.final:
            try:
                self.ledger.tag_status(
                    txn.ledger_id, txn.status, notes.get(txn.ledger_id)
                )
            except Exception as e:
                logger.warning(f"⚠️  Could not tag ledger transaction {txn.ledger_id}: {e}")
