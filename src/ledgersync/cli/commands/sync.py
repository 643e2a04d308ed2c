"""Sync commands for LedgerSync CLI.

This module provides commands for running a sync from the ledger through the
staging store into the accounting system, reprocessing transactions parked by
missing mappings, retrying failed imports and reporting on sync health.
"""

import logging
from datetime import datetime

import typer

from ledgersync.config import get_current_profile
from ledgersync.schemas import ReprocessResult, SyncResult, TransactionStatus
from ledgersync.sync.manager import SyncManager
from ledgersync.sync.report import ReprocessingReport, generate_reprocessing_report

app = typer.Typer(help="Sync transactions into the accounting system")
logger = logging.getLogger(__name__)

MAX_LISTED_ERRORS = 20


def _log_errors(result: SyncResult | ReprocessResult) -> None:
    if not result.errors:
        return
    logger.warning(f"⚠️  {len(result.errors)} error(s):")
    for error in result.errors[:MAX_LISTED_ERRORS]:
        logger.warning(f"  {error}")
    if len(result.errors) > MAX_LISTED_ERRORS:
        logger.warning(f"  ... and {len(result.errors) - MAX_LISTED_ERRORS} more")


def _resolve_dry_run(dry_run: bool, live: bool) -> bool | None:
    if dry_run and live:
        raise typer.BadParameter("--dry-run and --live are mutually exclusive")
    if live:
        return False
    if dry_run:
        return True
    return None


@app.command("run")
def sync_run(
    since: datetime | None = typer.Option(
        None,
        "--since",
        formats=["%Y-%m-%d"],
        help="Earliest transaction date (default: sync_days_back ago)",
    ),
    batch_size: int | None = typer.Option(
        None, "--batch-size", "-b", min=1, max=50, help="Transactions per batch"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Stage only, no accounting writes or ledger tags"
    ),
    live: bool = typer.Option(
        False, "--live", help="Override a dry_run default from configuration"
    ),
) -> None:
    """Sync reconciled ledger transactions into the accounting system.

    Transactions are stored in the staging store, mapped to accounting
    accounts and contacts, imported when sync_to_accounting is enabled and
    tagged in the ledger.

    Without --dry-run or --live the dry_run setting of the profile applies.
    """
    mode = _resolve_dry_run(dry_run, live)
    logger.info(f"Starting LedgerSync run (Profile: {get_current_profile()})")

    try:
        with SyncManager() as manager:
            result = manager.orchestrator.execute_sync(
                since=since.date() if since else None,
                batch_size=batch_size,
                dry_run=mode,
            )
    except Exception as e:
        logger.error(f"❌ Sync failed: {e}")
        raise typer.Exit(1) from e

    _log_errors(result)
    if not result.success:
        raise typer.Exit(1)
    logger.info("✅ Sync completed successfully")


@app.command("reprocess")
def sync_reprocess(
    limit: int = typer.Option(
        50, "--limit", "-l", min=1, help="Maximum transactions to reprocess"
    ),
    status: list[str] | None = typer.Option(
        None,
        "--status",
        "-s",
        help="Statuses to reprocess (repeatable, default: pending and failed)",
    ),
    auto_resolve: bool = typer.Option(
        True,
        "--auto-resolve/--no-auto-resolve",
        help="Search for or create missing accounts and contacts",
    ),
    import_to_accounting: bool = typer.Option(
        True, "--import/--no-import", help="Import transactions that become ready"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Report what would change without writing anything"
    ),
) -> None:
    """Reprocess transactions blocked by missing mappings."""
    try:
        statuses = [TransactionStatus(s.lower()) for s in status or []]
    except ValueError as e:
        valid = ", ".join(s.value for s in TransactionStatus)
        raise typer.BadParameter(f"{e}. Valid statuses: {valid}") from e

    try:
        with SyncManager() as manager:
            result = manager.reprocessing.reprocess(
                limit=limit,
                statuses=statuses or (TransactionStatus.PENDING, TransactionStatus.FAILED),
                auto_resolve=auto_resolve,
                dry_run=dry_run,
                import_to_accounting=import_to_accounting,
            )
    except Exception as e:
        logger.error(f"❌ Reprocessing failed: {e}")
        raise typer.Exit(1) from e

    if result.missing_categories or result.missing_payees:
        logger.info("Still unmapped:")
        for category_id, count in result.missing_categories.items():
            logger.info(f"  category {category_id}: {count} transactions")
        for payee_id, count in result.missing_payees.items():
            logger.info(f"  payee {payee_id}: {count} transactions")

    _log_errors(result)
    if not result.success:
        raise typer.Exit(1)


@app.command("retry-imports")
def sync_retry_imports(
    limit: int = typer.Option(25, "--limit", "-l", min=1, help="Maximum transactions"),
    max_age_hours: int = typer.Option(
        24, "--max-age-hours", min=1, help="Skip failures older than this"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="List what would be retried without importing"
    ),
) -> None:
    """Retry failed imports that already have both mappings."""
    try:
        with SyncManager() as manager:
            result = manager.reprocessing.retry_failed_imports(
                limit=limit, max_age_hours=max_age_hours, dry_run=dry_run
            )
    except Exception as e:
        logger.error(f"❌ Retry failed: {e}")
        raise typer.Exit(1) from e

    _log_errors(result)
    if not result.success:
        raise typer.Exit(1)


def _print_report(report: ReprocessingReport) -> None:
    summary = report.summary
    missing = report.missing_mappings
    analysis = report.error_analysis

    print("\n📊 LedgerSync Reprocessing Report")
    print(f"   Generated: {report.generated_at:%Y-%m-%d %H:%M}")
    print(f"   Transactions: {summary.total_transactions}")
    print(f"   Imported: {summary.imported} ({summary.success_rate * 100:.1f}%)")
    print(f"   Pending: {summary.pending}")
    print(f"   Failed: {summary.failed}")

    print("\n🔗 Missing mappings")
    print(
        f"   Categories: {missing.categories_needing_mapping} "
        f"({missing.blocked_by_categories} transactions blocked)"
    )
    print(
        f"   Payees: {missing.payees_needing_mapping} "
        f"({missing.blocked_by_payees} transactions blocked)"
    )

    if analysis.error_types:
        print("\n❌ Failure causes")
        for category, count in analysis.error_types.items():
            print(f"   {category.value}: {count}")
        for pattern, count in analysis.common_patterns.items():
            print(f"   {count}x {pattern}")

    if report.recommendations:
        print("\n💡 Recommendations")
        for rec in report.recommendations:
            print(f"   [{rec.priority.value}] {rec.message}")
            print(f"          {rec.action}")

    if report.details is not None:
        print("\n📋 Details")
        for entity in report.details.missing_categories:
            print(
                f"   category {entity.id} ({entity.name or 'unnamed'}): "
                f"{entity.transaction_count}"
            )
        for entity in report.details.missing_payees:
            print(
                f"   payee {entity.id} ({entity.name or 'unnamed'}): "
                f"{entity.transaction_count}"
            )
        for failure in report.details.recent_failures:
            print(f"   {failure.transaction_id}: {failure.error_message}")
    print()


@app.command("report")
def sync_report(
    since: datetime | None = typer.Option(
        None, "--since", formats=["%Y-%m-%d"], help="Only count statistics from this date"
    ),
    details: bool = typer.Option(
        False, "--details", help="Include per-entity and recent failure details"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Report sync health, missing mappings and failure patterns."""
    try:
        with SyncManager() as manager:
            report = generate_reprocessing_report(
                manager.staging,
                since=since.date() if since else None,
                include_details=details,
            )
    except Exception as e:
        logger.error(f"❌ Report failed: {e}")
        raise typer.Exit(1) from e

    if as_json:
        print(report.model_dump_json(indent=2))
    else:
        _print_report(report)
