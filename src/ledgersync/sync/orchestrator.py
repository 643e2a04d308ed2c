"""End-to-end sync run: ledger -> staging store -> accounting system.

A run fetches reconciled ledger transactions, stores them idempotently in the
staging store, resolves the category and payee mappings they need, and hands
them to the shared importer. Batches are processed sequentially; every
per-transaction failure is contained and reported in the ``SyncResult``.
"""

import logging
import time
from collections.abc import Callable, Sequence
from datetime import date, timedelta

from ..config import SyncConfig
from ..connectors.ledger import LedgerClient
from ..connectors.staging import StagingStoreClient
from ..errors import ValidationError
from ..mapping import MappingKind, MappingResolver
from ..schemas import (
    CategoryMapping,
    LedgerTransaction,
    PayeeMapping,
    SyncErrorRecord,
    SyncErrorType,
    SyncResult,
    Transaction,
    TransactionStatus,
)
from .importer import TransactionImporter, attach_mappings

logger = logging.getLogger(__name__)

# Duplicates in these states have not finished the pipeline yet
_RESUMABLE_STATUSES = (TransactionStatus.PENDING, TransactionStatus.MAPPED)


def batched(items: Sequence, size: int) -> list[Sequence]:
    """Split ``items`` into consecutive batches of at most ``size``."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    return [items[i : i + size] for i in range(0, len(items), size)]


class SyncOrchestrator:
    """Runs the ledger to accounting sync pipeline."""

    def __init__(
        self,
        ledger: LedgerClient,
        staging: StagingStoreClient,
        resolver: MappingResolver,
        importer: TransactionImporter,
        config: SyncConfig | None = None,
        today: Callable[[], date] = date.today,
    ):
        self.ledger = ledger
        self.staging = staging
        self.resolver = resolver
        self.importer = importer
        self.config = config or SyncConfig()
        self._today = today

        self._category_names: dict[str, str] = {}
        self._payee_names: dict[str, str] = {}
        self._categories: dict[str, CategoryMapping] = {}
        self._payees: dict[str, PayeeMapping] = {}

    def execute_sync(
        self,
        since: date | None = None,
        batch_size: int | None = None,
        dry_run: bool | None = None,
    ) -> SyncResult:
        """Run one sync.

        In a dry run the staging store still records transactions and their
        mapping state, but nothing is created or imported in the accounting
        system and the ledger is not tagged.

        Args:
            since: Earliest transaction date. Defaults to ``sync_days_back`` ago.
            batch_size: Transactions per batch. Defaults to config.
            dry_run: Skip accounting and ledger writes. Defaults to config.

        Returns:
            SyncResult: Counts and itemized errors

        Raises:
            Exception: If fetching from the ledger fails
        """
        started = time.monotonic()
        since = since or self._today() - timedelta(days=self.config.sync_days_back)
        batch_size = batch_size or self.config.batch_size
        dry_run = self.config.dry_run if dry_run is None else dry_run

        result = SyncResult(dry_run=dry_run)
        self._reset_run_state()

        logger.info(
            f"🔄 Starting sync: since={since.isoformat()}, batch_size={batch_size}, "
            f"dry_run={dry_run}, sync_to_accounting={self.config.sync_to_accounting}"
        )

        try:
            ledger_transactions = self._fetch(since, result)
            if not ledger_transactions:
                logger.info("No new reconciled transactions found")
                return result

            self._load_names()
            notes = {t.id: t.notes or "" for t in ledger_transactions}
            batches = batched(ledger_transactions, batch_size)
            for index, batch in enumerate(batches, start=1):
                logger.info(
                    f"Processing batch {index}/{len(batches)} ({len(batch)} transactions)"
                )
                self._process_batch(batch, result, dry_run, notes)
        except Exception as e:
            if not any(err.type == SyncErrorType.FETCH_ERROR for err in result.errors):
                result.errors.append(
                    SyncErrorRecord(type=SyncErrorType.SYNC_EXECUTION_ERROR, message=str(e))
                )
            logger.error(f"❌ Sync process failed: {e}")
            raise
        finally:
            result.duration_ms = int((time.monotonic() - started) * 1000)

        for line in result.summary():
            logger.info(line)
        return result

    def _reset_run_state(self) -> None:
        self.resolver.reset()
        self._categories.clear()
        self._payees.clear()

    def _fetch(self, since: date, result: SyncResult) -> list[LedgerTransaction]:
        try:
            group_id = self._category_group_id()
            transactions = self.ledger.get_reconciled_transactions(group_id, since)
        except Exception as e:
            result.errors.append(
                SyncErrorRecord(type=SyncErrorType.FETCH_ERROR, message=str(e))
            )
            logger.error(f"❌ Failed to fetch reconciled transactions: {e}")
            raise

        result.transactions_fetched = len(transactions)
        logger.info(f"Fetched {len(transactions)} reconciled transactions")
        return transactions

    def _category_group_id(self) -> str:
        if self.config.category_group_id:
            return self.config.category_group_id
        if not self.config.category_group_name:
            raise ValidationError("No category group ID or name configured")

        group = self.ledger.find_category_group_by_name(self.config.category_group_name)
        if group is None:
            raise ValidationError(
                f"Category group not found: {self.config.category_group_name}"
            )
        return group.id

    def _load_names(self) -> None:
        try:
            self._category_names = {c.id: c.name for c in self.ledger.get_categories()}
            self._payee_names = {p.id: p.name for p in self.ledger.get_payees()}
        except Exception as e:
            logger.warning(f"⚠️  Could not load ledger names, matching may fail: {e}")

    def _process_batch(
        self,
        batch: Sequence[LedgerTransaction],
        result: SyncResult,
        dry_run: bool,
        notes: dict[str, str],
    ) -> None:
        staged = self._store_batch(batch, result)
        if not staged:
            logger.info("No new transactions to process in this batch (all duplicates)")
            return

        self._resolve_mappings(staged, result, dry_run)
        prepared = [
            attach_mappings(self._with_names(t), self._categories, self._payees)
            for t in staged
        ]

        outcome = self.importer.process(
            prepared,
            dry_run=False,
            import_enabled=self.config.sync_to_accounting and not dry_run,
            tag_ledger=not dry_run,
            ledger_notes=notes,
        )
        result.transactions_mapped += len(outcome.ready)
        result.transactions_imported += len(outcome.imported)
        result.transactions_failed += len(outcome.failed)
        result.errors.extend(outcome.errors)

    def _store_batch(
        self, batch: Sequence[LedgerTransaction], result: SyncResult
    ) -> list[Transaction]:
        """Store a batch and return the records that should continue."""
        try:
            bulk = self.staging.bulk_store_transactions(batch)
        except Exception as e:
            logger.warning(f"⚠️  Bulk store failed ({e}), storing individually")
            return self._store_individually(batch, result)

        stored = list(bulk.stored)
        duplicates = list(bulk.duplicates)
        if bulk.errors:
            handled = {t.ledger_id for t in stored} | {t.ledger_id for t in duplicates}
            error_keys = {err.key for err in bulk.errors}
            retry = [
                t
                for t in batch
                if t.id not in handled and (None in error_keys or t.id in error_keys)
            ]
            logger.warning(
                f"⚠️  Bulk store rejected {len(bulk.errors)} transactions, retrying individually"
            )
            return self._count_stored(stored, duplicates, result) + self._store_individually(
                retry, result
            )

        return self._count_stored(stored, duplicates, result)

    def _store_individually(
        self, batch: Sequence[LedgerTransaction], result: SyncResult
    ) -> list[Transaction]:
        stored: list[Transaction] = []
        duplicates: list[Transaction] = []
        for ledger_txn in batch:
            try:
                outcome = self.staging.create_transaction(ledger_txn)
            except Exception as e:
                logger.error(f"❌ Failed to store transaction {ledger_txn.id}: {e}")
                result.errors.append(
                    SyncErrorRecord(
                        type=SyncErrorType.STORE_ERROR,
                        message=str(e),
                        transaction_id=ledger_txn.id,
                    )
                )
                continue
            (stored if outcome.created else duplicates).append(outcome.transaction)
        return self._count_stored(stored, duplicates, result)

    @staticmethod
    def _count_stored(
        stored: list[Transaction], duplicates: list[Transaction], result: SyncResult
    ) -> list[Transaction]:
        result.transactions_stored += len(stored)
        result.duplicates_skipped += len(duplicates)
        resumable = [t for t in duplicates if t.status in _RESUMABLE_STATUSES]
        if duplicates:
            logger.info(
                f"Skipped {len(duplicates)} duplicates "
                f"({len(resumable)} still pending, continuing them)"
            )
        return stored + resumable

    def _with_names(self, transaction: Transaction) -> Transaction:
        update: dict[str, str] = {}
        if transaction.category_ref and not transaction.category_name:
            name = self._category_names.get(transaction.category_ref)
            if name:
                update["category_name"] = name
        if transaction.payee_ref and not transaction.payee_name:
            name = self._payee_names.get(transaction.payee_ref)
            if name:
                update["payee_name"] = name
        return transaction.model_copy(update=update) if update else transaction

    def _resolve_mappings(
        self, transactions: Sequence[Transaction], result: SyncResult, dry_run: bool
    ) -> None:
        """Fetch existing mappings and resolve each missing one exactly once."""
        category_ids = {t.category_ref for t in transactions if t.category_ref}
        payee_ids = {t.payee_ref for t in transactions if t.payee_ref}
        category_ids -= self._categories.keys()
        payee_ids -= self._payees.keys()

        try:
            existing = self.staging.batch_get_mappings(category_ids, payee_ids)
        except Exception as e:
            logger.error(f"❌ Failed to fetch existing mappings: {e}")
            result.errors.append(
                SyncErrorRecord(type=SyncErrorType.RESOLUTION_ERROR, message=str(e))
            )
            return

        for mapping in existing.category_mappings:
            if mapping.is_resolved:
                self._categories[mapping.ledger_category_id] = mapping
        for mapping in existing.payee_mappings:
            if mapping.is_resolved:
                self._payees[mapping.ledger_payee_id] = mapping

        policy = self.resolver.with_policy(
            auto_create=self.config.auto_create_missing_entities,
            match_threshold=self.config.match_threshold,
            candidate_limit=self.config.candidate_limit,
            account_type=self.config.account_type,
            dry_run=dry_run,
        )

        for category_id in sorted(category_ids - self._categories.keys()):
            if self.resolver.cached(MappingKind.CATEGORY, category_id):
                continue
            mapping = self.resolver.resolve(
                category_id,
                self._category_names.get(category_id),
                MappingKind.CATEGORY,
                policy,
            )
            if isinstance(mapping, CategoryMapping):
                self._categories[category_id] = mapping
                result.mappings_resolved += 1

        for payee_id in sorted(payee_ids - self._payees.keys()):
            if self.resolver.cached(MappingKind.PAYEE, payee_id):
                continue
            mapping = self.resolver.resolve(
                payee_id, self._payee_names.get(payee_id), MappingKind.PAYEE, policy
            )
            if isinstance(mapping, PayeeMapping):
                self._payees[payee_id] = mapping
                result.mappings_resolved += 1

    def status(self) -> dict[str, object]:
        """Limiter and resolver statistics for the clients in use."""
        return {
            "ledger": self.ledger.rate_limiter.status(),
            "staging": self.staging.rate_limiter.status(),
            "resolver": {
                "searched": self.resolver.stats.searched,
                "exact_matches": self.resolver.stats.exact_matches,
                "fuzzy_matches": self.resolver.stats.fuzzy_matches,
                "created": self.resolver.stats.created,
                "unresolved": self.resolver.stats.unresolved,
                "errors": self.resolver.stats.errors,
            },
        }
