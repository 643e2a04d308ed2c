"""Mapping maintenance commands for LedgerSync CLI.

Export category and payee mappings to JSON or CSV, import edited files back,
take and restore backups, and check stored mappings for consistency.
"""

import logging
from pathlib import Path

import typer

from ledgersync.mapping import MappingKind
from ledgersync.mapping_manager import (
    ALL_KINDS,
    ConsistencyReport,
    ExportFormat,
    ImportSummary,
    load_mappings,
)
from ledgersync.sync.manager import SyncManager

app = typer.Typer(help="Export, import, back up and validate mappings")
logger = logging.getLogger(__name__)

MAX_LISTED_ERRORS = 20


def _log_import(summary: ImportSummary) -> bool:
    """Log per-kind results. Returns True when nothing failed."""
    if summary.backup_dir is not None:
        logger.info(f"💾 Previous mappings backed up to {summary.backup_dir}")
    ok = True
    for result in summary.results.values():
        prefix = "[dry run] " if summary.dry_run else ""
        logger.info(f"{prefix}{result.summary()}")
        for ref in result.invalid_references:
            logger.warning(f"⚠️  Invalid accounting reference {ref}")
        for error in result.errors[:MAX_LISTED_ERRORS]:
            logger.warning(f"  {error}")
        if result.failed:
            ok = False
    return ok


@app.command("export")
def mappings_export(
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Directory or file to write (default: print JSON)"
    ),
    fmt: ExportFormat = typer.Option(ExportFormat.JSON, "--format", "-f"),
    kind: list[MappingKind] | None = typer.Option(
        None, "--kind", "-k", help="Mapping kind to export (repeatable, default: both)"
    ),
    include_inactive: bool = typer.Option(
        False, "--include-inactive", help="Include deactivated mappings"
    ),
) -> None:
    """Export category and payee mappings."""
    if output is None and fmt is ExportFormat.CSV:
        raise typer.BadParameter("--format csv needs --output")

    try:
        with SyncManager() as manager:
            result = manager.mappings.export(
                kind or ALL_KINDS,
                include_inactive=include_inactive,
                output=output,
                fmt=fmt,
            )
    except Exception as e:
        logger.error(f"❌ Export failed: {e}")
        raise typer.Exit(1) from e

    if output is None:
        print(result.model_dump_json(include={"categories", "payees"}, by_alias=True, indent=2))
        return
    for path in result.files.values():
        logger.info(f"✅ Wrote {path}")


@app.command("import")
def mappings_import(
    path: Path = typer.Argument(..., help="Mapping file (.json or .csv) or backup directory"),
    kind: MappingKind | None = typer.Option(
        None, "--kind", "-k", help="Kind held by the file (default: from its name)"
    ),
    validate_references: bool = typer.Option(
        True,
        "--validate/--no-validate",
        help="Check accounting account and contact IDs exist",
    ),
    backup: bool = typer.Option(
        True, "--backup/--no-backup", help="Back up current mappings first"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Validate and count without writing"
    ),
) -> None:
    """Bulk create or update mappings from a file."""
    try:
        data = load_mappings(path, kind)
    except Exception as e:
        logger.error(f"❌ Could not read {path}: {e}")
        raise typer.Exit(1) from e

    try:
        with SyncManager() as manager:
            summary = manager.mappings.import_mappings(
                data,
                validate_references=validate_references,
                create_backup=backup,
                dry_run=dry_run,
            )
    except Exception as e:
        logger.error(f"❌ Import failed: {e}")
        raise typer.Exit(1) from e

    if not _log_import(summary):
        raise typer.Exit(1)


@app.command("backup")
def mappings_backup(
    directory: Path | None = typer.Option(
        None, "--dir", "-d", help="Backup directory (default: timestamped under mapping_backup_dir)"
    ),
) -> None:
    """Back up every stored mapping, inactive ones included."""
    try:
        with SyncManager() as manager:
            backup = manager.mappings.create_backup(directory=directory)
    except Exception as e:
        logger.error(f"❌ Backup failed: {e}")
        raise typer.Exit(1) from e

    counts = ", ".join(f"{n} {k.value}" for k, n in backup.counts.items())
    logger.info(f"✅ Backed up {counts} mappings to {backup.directory}")


@app.command("restore")
def mappings_restore(
    directory: Path = typer.Argument(..., help="Backup directory to restore"),
    validate_references: bool = typer.Option(
        False,
        "--validate/--no-validate",
        help="Check accounting account and contact IDs exist",
    ),
    backup: bool = typer.Option(
        True, "--backup/--no-backup", help="Back up current mappings first"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Validate and count without writing"
    ),
) -> None:
    """Restore mappings from a backup directory."""
    try:
        with SyncManager() as manager:
            summary = manager.mappings.restore_backup(
                directory,
                validate_references=validate_references,
                create_backup=backup,
                dry_run=dry_run,
            )
    except Exception as e:
        logger.error(f"❌ Restore failed: {e}")
        raise typer.Exit(1) from e

    if not _log_import(summary):
        raise typer.Exit(1)


def _print_consistency(report: ConsistencyReport) -> None:
    print("\n🔗 Mapping consistency")
    for label, stats in (("Categories", report.categories), ("Payees", report.payees)):
        print(
            f"   {label}: {stats.total} total, {stats.active} active, "
            f"{stats.mapped} mapped, {stats.unmapped} unmapped"
        )
        if stats.duplicate_ids:
            print(f"      duplicates: {', '.join(stats.duplicate_ids)}")
        if stats.orphaned:
            print(f"      orphaned: {', '.join(stats.orphaned)}")
        for ref in stats.invalid_references:
            print(f"      invalid: {ref}")

    if report.errors:
        print("\n❌ Errors")
        for error in report.errors:
            print(f"   {error}")
    if report.warnings:
        print("\n⚠️  Warnings")
        for warning in report.warnings:
            print(f"   {warning}")
    print(f"\n{'✅ Mappings are consistent' if report.is_valid else '❌ Mappings are inconsistent'}\n")


@app.command("validate")
def mappings_validate(
    check_references: bool = typer.Option(
        False,
        "--check-references",
        help="Look up every mapped accounting ID (one request each)",
    ),
    check_orphaned: bool = typer.Option(
        True,
        "--orphaned/--no-orphaned",
        help="Compare against the ledger's categories and payees",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Check stored mappings for duplicates, orphans and dead references."""
    try:
        with SyncManager() as manager:
            report = manager.mappings.validate_consistency(
                check_references=check_references, check_orphaned=check_orphaned
            )
    except Exception as e:
        logger.error(f"❌ Validation failed: {e}")
        raise typer.Exit(1) from e

    if as_json:
        print(report.model_dump_json(indent=2))
    else:
        _print_consistency(report)
    if not report.is_valid:
        raise typer.Exit(1)
