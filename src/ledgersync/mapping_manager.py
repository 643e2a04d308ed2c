"""Bulk maintenance of category and payee mappings.

Mappings live in the staging store. This module exports them to JSON or CSV,
imports them back in batches, keeps timestamped backups and checks that the
stored mappings still agree with the ledger and the accounting system.
"""

import csv
import json
import logging
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from collections.abc import Mapping as MappingOf
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from .connectors.accounting import AccountingClient
from .connectors.ledger import LedgerClient
from .connectors.staging import StagingStoreClient
from .errors import ValidationError
from .mapping import Mapping, MappingKind
from .schemas import CategoryMapping, MappingUpsertResult, PayeeMapping

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 25
BACKUP_METADATA_FILE = "backup-metadata.json"
BACKUP_VERSION = "1.0"
ALL_KINDS = (MappingKind.CATEGORY, MappingKind.PAYEE)

_MODELS: dict[MappingKind, type[CategoryMapping] | type[PayeeMapping]] = {
    MappingKind.CATEGORY: CategoryMapping,
    MappingKind.PAYEE: PayeeMapping,
}
_CSV_FIELDS = {
    MappingKind.CATEGORY: [
        "actual_category_id",
        "actual_category_name",
        "xero_account_id",
        "xero_account_name",
        "xero_account_code",
        "is_active",
    ],
    MappingKind.PAYEE: [
        "actual_payee_id",
        "actual_payee_name",
        "xero_contact_id",
        "xero_contact_name",
        "is_active",
    ],
}
_PLURALS = {MappingKind.CATEGORY: "categories", MappingKind.PAYEE: "payees"}


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


class UpsertSummary(BaseModel):
    """Outcome of a bulk mapping update for one kind."""

    kind: MappingKind
    dry_run: bool = False
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    invalid_references: list[str] = Field(default_factory=list)

    def summary(self) -> str:
        return (
            f"Processed {self.processed} {self.kind.value} mappings: "
            f"{self.created} created, {self.updated} updated, {self.failed} failed"
        )


class ImportSummary(BaseModel):
    dry_run: bool = False
    results: dict[MappingKind, UpsertSummary] = Field(default_factory=dict)
    backup_dir: Path | None = None


class ExportResult(BaseModel):
    format: ExportFormat = ExportFormat.JSON
    categories: list[CategoryMapping] = Field(default_factory=list)
    payees: list[PayeeMapping] = Field(default_factory=list)
    files: dict[MappingKind, Path] = Field(default_factory=dict)

    def mappings(self, kind: MappingKind) -> list[Mapping]:
        return list(self.categories if kind is MappingKind.CATEGORY else self.payees)


class BackupResult(BaseModel):
    directory: Path
    created_at: datetime
    counts: dict[MappingKind, int] = Field(default_factory=dict)
    files: dict[MappingKind, Path] = Field(default_factory=dict)


class KindConsistency(BaseModel):
    """Consistency statistics for one mapping kind."""

    total: int = 0
    active: int = 0
    mapped: int = 0
    unmapped: int = 0
    duplicate_ids: list[str] = Field(default_factory=list)
    orphaned: list[str] = Field(default_factory=list)
    invalid_references: list[str] = Field(default_factory=list)


class ConsistencyReport(BaseModel):
    categories: KindConsistency = Field(default_factory=KindConsistency)
    payees: KindConsistency = Field(default_factory=KindConsistency)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def ledger_id(mapping: Mapping) -> str:
    if isinstance(mapping, CategoryMapping):
        return mapping.ledger_category_id
    return mapping.ledger_payee_id


def accounting_id(mapping: Mapping) -> str | None:
    if isinstance(mapping, CategoryMapping):
        return mapping.accounting_account_id
    return mapping.accounting_contact_id


def parse_mappings(kind: MappingKind, rows: Iterable[MappingOf[str, Any]]) -> list[Mapping]:
    """Validate raw rows (JSON objects or CSV records) into mapping models.

    CSV values arrive as strings: blank cells count as missing and
    ``is_active`` is read as ``"true"``/``"false"``.

    Raises:
        ValidationError: Listing every row that could not be parsed
    """
    model = _MODELS[kind]
    mappings: list[Mapping] = []
    errors: list[str] = []
    for number, row in enumerate(rows, start=1):
        data = {k: v for k, v in row.items() if k is not None and v != ""}
        active = data.get("is_active")
        if isinstance(active, str):
            data["is_active"] = active.strip().lower() == "true"
        try:
            mappings.append(model.model_validate(data))
        except SchemaError as e:
            problems = ", ".join(
                f"{'.'.join(str(p) for p in err['loc'])} {err['msg']}" for err in e.errors()
            )
            errors.append(f"Row {number}: {problems}")
    if errors:
        raise ValidationError(f"Invalid {kind.value} mappings: {'; '.join(errors)}")
    return mappings


def validate_mappings(kind: MappingKind, mappings: Sequence[Mapping]) -> None:
    """Require a ledger ID and name on every mapping.

    Raises:
        ValidationError: Listing every offending row
    """
    errors: list[str] = []
    for number, mapping in enumerate(mappings, start=1):
        if not ledger_id(mapping).strip():
            errors.append(f"Row {number}: actual_{kind.value}_id is required")
        if not (mapping.name or "").strip():
            errors.append(f"Row {number}: actual_{kind.value}_name is required")
    if errors:
        raise ValidationError(f"Mapping validation failed: {', '.join(errors)}")


def export_path(base: Path, kind: MappingKind, fmt: ExportFormat, day: datetime) -> Path:
    """File an export of ``kind`` is written to.

    A directory gets ``{kind}-mappings-{date}.{format}``; a file path gets the
    kind appended to its stem.
    """
    if not base.suffix:
        return base / f"{kind.value}-mappings-{day:%Y-%m-%d}.{fmt.value}"
    return base.with_name(f"{base.stem}-{kind.value}.{fmt.value}")


def write_mappings(
    kind: MappingKind, mappings: Sequence[Mapping], path: Path, fmt: ExportFormat
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = [m.to_payload() for m in mappings]
    if fmt is ExportFormat.JSON:
        path.write_text(json.dumps(rows, indent=2, default=str), encoding="utf-8")
        return
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=_CSV_FIELDS[kind], extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)


def read_mappings(kind: MappingKind, path: Path) -> list[Mapping]:
    fmt = _format_for(path)
    if fmt is ExportFormat.CSV:
        with path.open(newline="", encoding="utf-8-sig") as f:
            return parse_mappings(kind, csv.DictReader(f))

    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get(_PLURALS[kind], [])
    if not isinstance(data, list):
        raise ValidationError(f"{path} does not hold a list of {kind.value} mappings")
    return parse_mappings(kind, data)


def _format_for(path: Path) -> ExportFormat:
    try:
        return ExportFormat(path.suffix.lstrip(".").lower())
    except ValueError as e:
        raise ValidationError(f"Unsupported mapping file type: {path.name}") from e


def _kind_from_name(path: Path) -> MappingKind | None:
    name = path.name.lower()
    for kind in ALL_KINDS:
        if name.startswith(kind.value) or name.startswith(_PLURALS[kind]):
            return kind
    return None


def load_mappings(
    path: Path, kind: MappingKind | None = None
) -> dict[MappingKind, list[Mapping]]:
    """Load mappings from a file or a backup directory.

    Args:
        path: A ``.json``/``.csv`` file, or a directory holding
            ``{kind}-mappings*.json`` files
        kind: Kind held by a single-kind file. Inferred from the file name
            when omitted; a JSON object with ``categories``/``payees`` keys
            holds both.

    Raises:
        ValidationError: If the path is missing or its contents are invalid
    """
    if path.is_dir():
        loaded: dict[MappingKind, list[Mapping]] = {}
        for k in ALL_KINDS:
            candidates = sorted(path.glob(f"{k.value}-mappings*.json"))
            if candidates:
                loaded[k] = read_mappings(k, candidates[-1])
        if not loaded:
            raise ValidationError(f"No mapping files found in {path}")
        return loaded

    if not path.is_file():
        raise ValidationError(f"Mapping file not found: {path}")

    kind = kind or _kind_from_name(path)
    if kind is not None:
        return {kind: read_mappings(kind, path)}

    if _format_for(path) is ExportFormat.JSON:
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            return {
                k: parse_mappings(k, data[_PLURALS[k]])
                for k in ALL_KINDS
                if _PLURALS[k] in data
            }
    raise ValidationError(
        f"Cannot tell whether {path.name} holds category or payee mappings; pass a kind"
    )


class MappingManager:
    """Export, import, backup and consistency checks for stored mappings."""

    def __init__(
        self,
        staging: StagingStoreClient,
        accounting: AccountingClient | None = None,
        ledger: LedgerClient | None = None,
        backup_dir: Path = Path("backups/mappings"),
        batch_size: int = UPSERT_BATCH_SIZE,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.staging = staging
        self.accounting = accounting
        self.ledger = ledger
        self.backup_dir = backup_dir
        self.batch_size = batch_size
        self.now = now

    # Bulk updates

    def bulk_update(
        self,
        kind: MappingKind,
        mappings: Sequence[Mapping],
        *,
        validate_references: bool = True,
        create_backup: bool = True,
        dry_run: bool = False,
    ) -> UpsertSummary:
        """Upsert many mappings of one kind in batches.

        A batch the bulk endpoint rejects outright is retried one mapping at a
        time. Accounting references that no longer exist are reported, not
        dropped.

        Args:
            kind: Category or payee mappings
            mappings: Mappings to upsert
            validate_references: Check each accounting ID exists
            create_backup: Back up the current mappings of this kind first
            dry_run: Validate and count without writing

        Raises:
            ValidationError: If there is nothing to update or a row is invalid
        """
        if not mappings:
            raise ValidationError(f"No {kind.value} mappings to update")
        validate_mappings(kind, mappings)
        logger.info(f"Processing {len(mappings)} {kind.value} mappings (dry_run={dry_run})")

        summary = UpsertSummary(kind=kind, dry_run=dry_run)
        if create_backup and not dry_run:
            self.create_backup([kind])

        if validate_references:
            summary.invalid_references = self.invalid_references(kind, mappings)
            if summary.invalid_references:
                logger.warning(
                    f"⚠️  {len(summary.invalid_references)} {kind.value} mappings point "
                    "at missing accounting entities"
                )

        bulk = (
            self.staging.bulk_upsert_category_mappings
            if kind is MappingKind.CATEGORY
            else self.staging.bulk_upsert_payee_mappings
        )
        total_batches = (len(mappings) + self.batch_size - 1) // self.batch_size
        for number, start in enumerate(range(0, len(mappings), self.batch_size), start=1):
            batch = list(mappings[start : start + self.batch_size])
            if dry_run:
                summary.processed += len(batch)
                continue

            logger.debug(f"Upserting {kind.value} batch {number}/{total_batches}")
            try:
                result: MappingUpsertResult = bulk(batch)
            except Exception as e:
                logger.error(
                    f"❌ {kind.value} mapping batch {number} failed ({e}), "
                    "upserting individually"
                )
                self._upsert_individually(kind, batch, summary)
                continue

            summary.processed += len(batch)
            summary.created += len(result.created)
            summary.updated += len(result.updated)
            summary.failed += len(result.errors)
            summary.errors.extend(
                f"{err.key or 'unknown'}: {err.message}" for err in result.errors
            )

        logger.info(f"✅ {summary.summary()}")
        return summary

    def _upsert_individually(
        self, kind: MappingKind, batch: Sequence[Mapping], summary: UpsertSummary
    ) -> None:
        for mapping in batch:
            try:
                if isinstance(mapping, CategoryMapping):
                    self.staging.upsert_category_mapping(mapping)
                else:
                    self.staging.upsert_payee_mapping(mapping)
            except Exception as e:
                summary.failed += 1
                summary.errors.append(f"{mapping.name or ledger_id(mapping)}: {e}")
                continue
            summary.processed += 1
            summary.updated += 1

    def invalid_references(
        self, kind: MappingKind, mappings: Sequence[Mapping]
    ) -> list[str]:
        """Mappings whose accounting account or contact no longer exists.

        Returns:
            list: ``"{ledger id}: {accounting id} ({reason})"`` entries
        """
        if self.accounting is None:
            logger.warning("⚠️  No accounting client; accounting references not checked")
            return []

        lookup = (
            self.accounting.get_account
            if kind is MappingKind.CATEGORY
            else self.accounting.get_contact
        )
        invalid: list[str] = []
        for mapping in mappings:
            ref = accounting_id(mapping)
            if not ref:
                continue
            try:
                found = lookup(ref)
            except Exception as e:
                invalid.append(f"{ledger_id(mapping)}: {ref} ({e})")
                continue
            if found is None:
                invalid.append(f"{ledger_id(mapping)}: {ref} (not found)")
        return invalid

    # Export and import

    def export(
        self,
        kinds: Sequence[MappingKind] = ALL_KINDS,
        *,
        include_inactive: bool = False,
        output: Path | None = None,
        fmt: ExportFormat = ExportFormat.JSON,
    ) -> ExportResult:
        """Read stored mappings and optionally write them to files.

        Args:
            kinds: Mapping kinds to export
            include_inactive: Keep deactivated mappings
            output: Directory or file path to write; nothing is written when
                omitted
            fmt: File format
        """
        batch = self.staging.get_all_mappings()
        result = ExportResult(format=fmt)
        if MappingKind.CATEGORY in kinds:
            result.categories = [
                m for m in batch.category_mappings if include_inactive or m.active
            ]
        if MappingKind.PAYEE in kinds:
            result.payees = [m for m in batch.payee_mappings if include_inactive or m.active]

        if output is not None:
            day = self.now()
            for kind in kinds:
                path = export_path(output, kind, fmt, day)
                write_mappings(kind, result.mappings(kind), path, fmt)
                result.files[kind] = path

        logger.info(
            f"Exported {len(result.categories)} category and {len(result.payees)} "
            f"payee mappings as {fmt.value}"
        )
        return result

    def import_mappings(
        self,
        data: MappingOf[MappingKind, Sequence[Mapping]],
        *,
        kinds: Sequence[MappingKind] = ALL_KINDS,
        validate_references: bool = True,
        create_backup: bool = True,
        dry_run: bool = False,
    ) -> ImportSummary:
        """Upsert loaded mappings, backing up the current ones first."""
        summary = ImportSummary(dry_run=dry_run)
        if create_backup and not dry_run:
            summary.backup_dir = self.create_backup().directory

        for kind in kinds:
            mappings = data.get(kind)
            if not mappings:
                continue
            logger.info(f"Importing {len(mappings)} {kind.value} mappings")
            summary.results[kind] = self.bulk_update(
                kind,
                mappings,
                validate_references=validate_references,
                create_backup=False,
                dry_run=dry_run,
            )
        return summary

    # Backup and restore

    def create_backup(
        self, kinds: Sequence[MappingKind] = ALL_KINDS, directory: Path | None = None
    ) -> BackupResult:
        """Write every stored mapping of ``kinds``, inactive ones included.

        The backup is a directory of ``{kind}-mappings.json`` files plus a
        metadata file, named after the time it was taken.
        """
        created_at = self.now()
        directory = directory or self.backup_dir / f"{created_at:%Y-%m-%dT%H-%M-%S}"
        exported = self.export(kinds, include_inactive=True)

        backup = BackupResult(directory=directory, created_at=created_at)
        for kind in kinds:
            mappings = exported.mappings(kind)
            path = directory / f"{kind.value}-mappings.json"
            write_mappings(kind, mappings, path, ExportFormat.JSON)
            backup.files[kind] = path
            backup.counts[kind] = len(mappings)

        metadata = {
            "created_at": created_at.isoformat(),
            "kinds": [k.value for k in kinds],
            "counts": {k.value: n for k, n in backup.counts.items()},
            "version": BACKUP_VERSION,
        }
        (directory / BACKUP_METADATA_FILE).write_text(
            json.dumps(metadata, indent=2), encoding="utf-8"
        )
        logger.info(f"💾 Mapping backup created: {directory}")
        return backup

    def restore_backup(
        self,
        directory: Path,
        *,
        validate_references: bool = False,
        create_backup: bool = True,
        dry_run: bool = False,
    ) -> ImportSummary:
        """Upsert the mappings saved in a backup directory.

        The current mappings are backed up first unless ``create_backup`` is
        off. Mappings created after the backup are left in place.

        Raises:
            ValidationError: If the directory holds no backup
        """
        if not directory.is_dir():
            raise ValidationError(f"Backup directory not found: {directory}")

        metadata_path = directory / BACKUP_METADATA_FILE
        try:
            metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"⚠️  Could not read backup metadata: {e}")
        else:
            logger.info(f"Restoring backup taken {metadata.get('created_at', 'at an unknown time')}")

        data = load_mappings(directory)
        pre_restore = None
        if create_backup and not dry_run:
            pre_restore = self.create_backup().directory

        summary = self.import_mappings(
            data,
            validate_references=validate_references,
            create_backup=False,
            dry_run=dry_run,
        )
        summary.backup_dir = pre_restore
        return summary

    # Consistency

    def validate_consistency(
        self, *, check_references: bool = False, check_orphaned: bool = True
    ) -> ConsistencyReport:
        """Check stored mappings for duplicates, orphans and dead references.

        Duplicate accounting IDs and references to missing accounting entities
        are errors. Mappings whose ledger category or payee no longer exists,
        and entities without an accounting mapping, are warnings.

        Args:
            check_references: Look up every mapped accounting ID (one request each)
            check_orphaned: Compare against the ledger's categories and payees
        """
        batch = self.staging.get_all_mappings()
        report = ConsistencyReport()

        for kind, mappings in (
            (MappingKind.CATEGORY, batch.category_mappings),
            (MappingKind.PAYEE, batch.payee_mappings),
        ):
            known = self._ledger_ids(kind, report) if check_orphaned else None
            stats = self._check_kind(kind, mappings, known, check_references, report)
            if kind is MappingKind.CATEGORY:
                report.categories = stats
            else:
                report.payees = stats

        logger.info(
            f"Mapping validation complete: "
            f"{report.categories.mapped + report.payees.mapped} mapped, "
            f"{report.categories.unmapped + report.payees.unmapped} unmapped, "
            f"{len(report.errors)} errors"
        )
        return report

    def _ledger_ids(self, kind: MappingKind, report: ConsistencyReport) -> set[str] | None:
        if self.ledger is None:
            return None
        try:
            if kind is MappingKind.CATEGORY:
                return {c.id for c in self.ledger.get_categories()}
            return {p.id for p in self.ledger.get_payees()}
        except Exception as e:
            report.warnings.append(f"Could not check for orphaned {kind.value} mappings: {e}")
            return None

    def _check_kind(
        self,
        kind: MappingKind,
        mappings: Sequence[Mapping],
        known_ledger_ids: set[str] | None,
        check_references: bool,
        report: ConsistencyReport,
    ) -> KindConsistency:
        target = "account" if kind is MappingKind.CATEGORY else "contact"
        mapped = [m for m in mappings if accounting_id(m)]
        stats = KindConsistency(
            total=len(mappings),
            active=sum(1 for m in mappings if m.active),
            mapped=len(mapped),
            unmapped=len(mappings) - len(mapped),
        )

        counts = Counter(accounting_id(m) for m in mapped)
        stats.duplicate_ids = sorted(ref for ref, n in counts.items() if ref and n > 1)
        if stats.duplicate_ids:
            report.errors.append(
                f"Found {len(stats.duplicate_ids)} duplicate accounting {target} IDs "
                f"in {kind.value} mappings"
            )

        if known_ledger_ids is not None:
            stats.orphaned = sorted(
                ledger_id(m) for m in mappings if ledger_id(m) not in known_ledger_ids
            )
            if stats.orphaned:
                report.warnings.append(
                    f"{len(stats.orphaned)} {kind.value} mappings refer to "
                    f"{_PLURALS[kind]} no longer in the ledger"
                )

        if check_references and mapped:
            stats.invalid_references = self.invalid_references(kind, mapped)
            if stats.invalid_references:
                report.errors.append(
                    f"Found {len(stats.invalid_references)} invalid accounting {target} "
                    f"IDs in {kind.value} mappings"
                )

        if stats.unmapped:
            report.warnings.append(
                f"{stats.unmapped} {_PLURALS[kind]} are not mapped to accounting {target}s"
            )
        return stats
