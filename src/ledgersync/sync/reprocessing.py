"""Reprocess staged transactions that were parked for missing mappings.

Mappings are often fixed after the fact, either by hand in the staging store
or by enabling auto-create. This pass picks up pending and failed transactions,
resolves each missing category and payee once, and pushes whatever became
ready through the same importer the sync run uses.
"""

import logging
import time
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta, tzinfo

from ..config import SyncConfig
from ..connectors.ledger import LedgerClient
from ..connectors.staging import StagingStoreClient
from ..mapping import MappingKind, MappingResolver
from ..schemas import (
    CategoryMapping,
    PayeeMapping,
    ReprocessResult,
    SyncErrorRecord,
    SyncErrorType,
    Transaction,
    TransactionStatus,
    is_mapping_error,
)
from .importer import ImportOutcome, TransactionImporter, attach_mappings

logger = logging.getLogger(__name__)

DEFAULT_STATUSES = (TransactionStatus.PENDING, TransactionStatus.FAILED)


def needs_reprocessing(transaction: Transaction) -> bool:
    """Not imported, and either missing a mapping ref or failed for one."""
    if transaction.status == TransactionStatus.IMPORTED:
        return False
    if not transaction.has_account or not transaction.has_contact:
        return True
    return is_mapping_error(transaction.error_message)


def count_missing(
    transactions: Iterable[Transaction],
) -> tuple[Counter[str], Counter[str]]:
    """Distinct missing category and payee ids with the transactions needing each."""
    categories: Counter[str] = Counter()
    payees: Counter[str] = Counter()
    for txn in transactions:
        if not txn.has_account and txn.category_ref:
            categories[txn.category_ref] += 1
        if not txn.has_contact and txn.payee_ref:
            payees[txn.payee_ref] += 1
    return categories, payees


class ReprocessingEngine:
    """Resolves missing mappings for parked transactions and imports them."""

    def __init__(
        self,
        staging: StagingStoreClient,
        resolver: MappingResolver,
        importer: TransactionImporter,
        config: SyncConfig | None = None,
        ledger: LedgerClient | None = None,
        now: Callable[[tzinfo | None], datetime] = datetime.now,
    ):
        """Initialize the engine.

        Args:
            staging: Source of parked transactions and mappings
            resolver: Shared mapping resolver
            importer: Shared importer, also used by sync runs
            config: Sync settings for match threshold and auto-create
            ledger: Used to look up names the staging store does not carry
            now: Current time, injectable for tests
        """
        self.staging = staging
        self.resolver = resolver
        self.importer = importer
        self.config = config or SyncConfig()
        self.ledger = ledger
        self._now = now
        self._ledger_names: dict[MappingKind, dict[str, str]] | None = None

    def reprocess(
        self,
        limit: int = 50,
        statuses: Sequence[TransactionStatus | str] = DEFAULT_STATUSES,
        auto_resolve: bool = True,
        dry_run: bool = False,
        import_to_accounting: bool = True,
    ) -> ReprocessResult:
        """Reprocess transactions blocked by missing mappings.

        Args:
            limit: Maximum transactions to fetch
            statuses: Statuses to consider
            auto_resolve: Search for or create missing accounts and contacts
            dry_run: Report what would happen without writing anything
            import_to_accounting: Import transactions that become ready

        Returns:
            ReprocessResult: Counts, missing entities and itemized errors
        """
        started = time.monotonic()
        result = ReprocessResult(dry_run=dry_run, auto_resolve=auto_resolve)
        self.resolver.reset()
        self._ledger_names = None

        logger.info(
            f"🔄 Starting reprocessing: limit={limit}, auto_resolve={auto_resolve}, "
            f"dry_run={dry_run}"
        )

        try:
            candidates = self.staging.get_transactions_for_reprocessing(
                limit=limit, statuses=statuses
            )
            result.transactions_found = len(candidates)

            eligible = [t for t in candidates if needs_reprocessing(t)]
            result.transactions_eligible = len(eligible)
            if not eligible:
                logger.info("No transactions need reprocessing")
                return result

            missing_categories, missing_payees = count_missing(eligible)
            logger.info(
                f"Found {len(eligible)} transactions missing "
                f"{len(missing_categories)} distinct categories and "
                f"{len(missing_payees)} distinct payees"
            )

            categories, payees = self._fetch_mappings(
                missing_categories, missing_payees, result
            )
            if auto_resolve:
                self._resolve_missing(
                    eligible,
                    missing_categories,
                    missing_payees,
                    categories,
                    payees,
                    result,
                    dry_run,
                )

            prepared = [attach_mappings(t, categories, payees) for t in eligible]
            outcome = self.importer.process(
                prepared,
                dry_run=dry_run,
                import_enabled=import_to_accounting,
                reprocessing=True,
            )
            self._record(outcome, result)

            result.missing_categories = {
                cid: n for cid, n in missing_categories.items() if cid not in categories
            }
            result.missing_payees = {
                pid: n for pid, n in missing_payees.items() if pid not in payees
            }
        except Exception as e:
            result.errors.append(
                SyncErrorRecord(type=SyncErrorType.SYNC_EXECUTION_ERROR, message=str(e))
            )
            logger.error(f"❌ Reprocessing failed: {e}")
            raise
        finally:
            result.duration_ms = int((time.monotonic() - started) * 1000)

        for line in result.summary():
            logger.info(line)
        return result

    def retry_failed_imports(
        self, limit: int = 25, max_age_hours: int = 24, dry_run: bool = False
    ) -> ReprocessResult:
        """Retry failed transactions that already carry both mapping refs.

        These failed in the accounting system itself, for example during an
        outage, and only need another import attempt.

        Args:
            limit: Maximum transactions to fetch
            max_age_hours: Skip transactions last updated longer ago than this
            dry_run: Report what would be retried without importing

        Returns:
            ReprocessResult: Counts and itemized errors
        """
        started = time.monotonic()
        result = ReprocessResult(dry_run=dry_run, auto_resolve=False)

        failed = self.staging.get_transactions_for_reprocessing(
            limit=limit, statuses=[TransactionStatus.FAILED]
        )
        result.transactions_found = len(failed)

        retryable = [
            t
            for t in failed
            if t.has_account
            and t.has_contact
            and not is_mapping_error(t.error_message)
            and self._within_age(t, max_age_hours)
        ]
        result.transactions_eligible = len(retryable)
        logger.info(
            f"🔄 Retrying {len(retryable)} of {len(failed)} failed imports "
            f"(max age {max_age_hours}h, dry_run={dry_run})"
        )

        if retryable:
            outcome = self.importer.process(retryable, dry_run=dry_run, reprocessing=True)
            self._record(outcome, result)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        for line in result.summary():
            logger.info(line)
        return result

    def _within_age(self, transaction: Transaction, max_age_hours: int) -> bool:
        stamp = transaction.updated_at or transaction.created_at
        if stamp is None:
            return True
        return self._now(stamp.tzinfo) - stamp <= timedelta(hours=max_age_hours)

    def _fetch_mappings(
        self,
        category_ids: Iterable[str],
        payee_ids: Iterable[str],
        result: ReprocessResult,
    ) -> tuple[dict[str, CategoryMapping], dict[str, PayeeMapping]]:
        """Current resolved mappings for the given ids."""
        category_ids = set(category_ids)
        payee_ids = set(payee_ids)
        if not category_ids and not payee_ids:
            return {}, {}

        try:
            batch = self.staging.batch_get_mappings(category_ids, payee_ids)
        except Exception as e:
            logger.error(f"❌ Failed to fetch existing mappings: {e}")
            result.errors.append(
                SyncErrorRecord(type=SyncErrorType.RESOLUTION_ERROR, message=str(e))
            )
            return {}, {}

        categories = {
            cid: m for cid, m in batch.categories_by_id().items() if m.is_resolved
        }
        payees = {pid: m for pid, m in batch.payees_by_id().items() if m.is_resolved}
        logger.info(
            f"Staging store already has {len(categories)} category and "
            f"{len(payees)} payee mappings"
        )
        return categories, payees

    def _resolve_missing(
        self,
        transactions: Sequence[Transaction],
        missing_categories: Counter[str],
        missing_payees: Counter[str],
        categories: dict[str, CategoryMapping],
        payees: dict[str, PayeeMapping],
        result: ReprocessResult,
        dry_run: bool,
    ) -> None:
        policy = self.resolver.with_policy(
            auto_create=self.config.auto_create_missing_entities,
            match_threshold=self.config.match_threshold,
            candidate_limit=self.config.candidate_limit,
            account_type=self.config.account_type,
            dry_run=dry_run,
        )
        category_names = {
            t.category_ref: t.category_name
            for t in transactions
            if t.category_ref and t.category_name
        }
        payee_names = {
            t.payee_ref: t.payee_name for t in transactions if t.payee_ref and t.payee_name
        }

        # Most needed first, so a partial failure still unblocks the most rows
        for category_id, count in missing_categories.most_common():
            if category_id in categories:
                continue
            name = category_names.get(category_id) or self._ledger_name(
                MappingKind.CATEGORY, category_id
            )
            mapping = self.resolver.resolve(category_id, name, MappingKind.CATEGORY, policy)
            if isinstance(mapping, CategoryMapping):
                categories[category_id] = mapping
                result.mappings_resolved += 1
                logger.info(f"✅ Resolved category '{name}' for {count} transactions")

        for payee_id, count in missing_payees.most_common():
            if payee_id in payees:
                continue
            name = payee_names.get(payee_id) or self._ledger_name(
                MappingKind.PAYEE, payee_id
            )
            mapping = self.resolver.resolve(payee_id, name, MappingKind.PAYEE, policy)
            if isinstance(mapping, PayeeMapping):
                payees[payee_id] = mapping
                result.mappings_resolved += 1
                logger.info(f"✅ Resolved payee '{name}' for {count} transactions")

    def _ledger_name(self, kind: MappingKind, entity_id: str) -> str | None:
        if self.ledger is None:
            return None
        if self._ledger_names is None:
            self._ledger_names = {MappingKind.CATEGORY: {}, MappingKind.PAYEE: {}}
            try:
                self._ledger_names[MappingKind.CATEGORY] = {
                    c.id: c.name for c in self.ledger.get_categories()
                }
                self._ledger_names[MappingKind.PAYEE] = {
                    p.id: p.name for p in self.ledger.get_payees()
                }
            except Exception as e:
                logger.warning(f"⚠️  Could not load ledger names: {e}")
        return self._ledger_names[kind].get(entity_id)

    @staticmethod
    def _record(outcome: ImportOutcome, result: ReprocessResult) -> None:
        result.transactions_processed += len(outcome.ready) + len(outcome.blocked)
        result.transactions_resolved += len(outcome.ready)
        result.transactions_imported += len(outcome.imported)
        result.transactions_failed += len(outcome.failed)
        result.errors.extend(outcome.errors)
