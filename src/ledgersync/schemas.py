"""Pydantic schemas for ledger, staging store and accounting records.

Every payload crossing an API boundary is validated into one of these models.
Field names are pythonic; aliases carry the wire names used by the staging
store (``actual_*``/``xero_*``) and by the accounting API (``AccountID``...).
"""

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

CENTS = Decimal("0.01")


class TransactionStatus(str, Enum):
    """Lifecycle of a staged transaction.

    ``pending -> mapped -> imported`` with ``failed`` reachable from the first
    two. ``imported`` is terminal.
    """

    PENDING = "pending"
    MAPPED = "mapped"
    IMPORTED = "imported"
    FAILED = "failed"


class WireSchema(BaseModel):
    """Base schema for API payloads."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


def _coerce_date(v: Any) -> Any:
    # Staging store returns ISO timestamps for date columns
    if isinstance(v, str) and len(v) > 10 and v[10] in ("T", " "):
        return v[:10]
    if isinstance(v, datetime):
        return v.date()
    return v


def to_decimal_amount(minor_units: int) -> Decimal:
    """Convert ledger minor units (cents) to a two-place decimal."""
    return (Decimal(minor_units) / 100).quantize(CENTS, rounding=ROUND_HALF_UP)


# Ledger records


class LedgerTransaction(WireSchema):
    """Transaction as returned by the ledger shim."""

    id: str
    date: date
    amount: int = Field(..., description="Amount in minor units, negative for spend")
    notes: str | None = None
    imported_description: str | None = None
    category: str | None = None
    payee: str | None = None
    account: str | None = None
    reconciled: bool = False

    @field_validator("date", mode="before")
    @classmethod
    def coerce_date(cls, v: Any) -> Any:
        return _coerce_date(v)

    @field_validator("category", "payee", mode="before")
    @classmethod
    def blank_refs_to_none(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @property
    def decimal_amount(self) -> Decimal:
        """Amount converted from minor units."""
        return to_decimal_amount(self.amount)

    @property
    def description(self) -> str:
        """Notes, falling back to the imported bank description."""
        return self.notes or self.imported_description or ""

    def to_staging_payload(self) -> dict[str, Any]:
        """Body for the staging store's idempotent create."""
        return {
            "actual_transaction_id": self.id,
            "transaction_date": self.date.isoformat(),
            "amount": float(self.decimal_amount),
            "description": self.description,
            "actual_category_id": self.category,
            "actual_payee_id": self.payee,
        }


class LedgerCategory(WireSchema):
    """Ledger budget category."""

    id: str
    name: str
    group_id: str | None = Field(
        default=None, validation_alias=AliasChoices("group_id", "cat_group")
    )
    hidden: bool = False


class LedgerCategoryGroup(WireSchema):
    """Ledger category group."""

    id: str
    name: str
    categories: list[LedgerCategory] = Field(default_factory=list)


class LedgerPayee(WireSchema):
    """Ledger payee."""

    id: str
    name: str


# Staging store records


class Transaction(WireSchema):
    """Staged transaction, the unit of sync state."""

    staging_id: int | None = Field(default=None, alias="id")
    ledger_id: str = Field(..., alias="actual_transaction_id", min_length=1)
    transaction_date: date
    amount: Decimal
    description: str = ""
    category_ref: str | None = Field(default=None, alias="actual_category_id")
    category_name: str | None = Field(default=None, alias="actual_category_name")
    payee_ref: str | None = Field(default=None, alias="actual_payee_id")
    payee_name: str | None = Field(default=None, alias="actual_payee_name")
    accounting_account_ref: str | None = Field(default=None, alias="xero_account_id")
    accounting_account_code: str | None = Field(
        default=None, alias="xero_account_code"
    )
    accounting_contact_ref: str | None = Field(default=None, alias="xero_contact_id")
    accounting_txn_id: str | None = Field(default=None, alias="xero_transaction_id")
    accounting_reference: str | None = Field(default=None, alias="xero_reference")
    imported_at: datetime | None = Field(default=None, alias="xero_imported_date")
    status: TransactionStatus = TransactionStatus.PENDING
    error_message: str | None = None
    created_at: datetime | None = Field(default=None, alias="created_date")
    updated_at: datetime | None = Field(default=None, alias="updated_date")

    @field_validator("transaction_date", mode="before")
    @classmethod
    def coerce_date(cls, v: Any) -> Any:
        return _coerce_date(v)

    @field_validator(
        "category_ref",
        "payee_ref",
        "accounting_account_ref",
        "accounting_account_code",
        "accounting_contact_ref",
        "accounting_txn_id",
        "accounting_reference",
        "error_message",
        "imported_at",
        mode="before",
    )
    @classmethod
    def blank_refs_to_none(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v: Any) -> Any:
        """Treat a missing description as empty."""
        return "" if v is None else v

    @field_validator("amount", mode="after")
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        """Keep amounts at two decimal places."""
        return v.quantize(CENTS, rounding=ROUND_HALF_UP)

    @property
    def key(self) -> str:
        """Identifier used in error records and logs."""
        return self.ledger_id

    @property
    def has_account(self) -> bool:
        return bool(self.accounting_account_ref and self.accounting_account_ref.strip())

    @property
    def has_contact(self) -> bool:
        return bool(self.accounting_contact_ref and self.accounting_contact_ref.strip())


class CategoryMapping(WireSchema):
    """Ledger category to accounting account mapping."""

    ledger_category_id: str = Field(..., alias="actual_category_id")
    name: str | None = Field(default=None, alias="actual_category_name")
    accounting_account_id: str | None = Field(default=None, alias="xero_account_id")
    accounting_account_name: str | None = Field(
        default=None, alias="xero_account_name"
    )
    account_code: str | None = Field(default=None, alias="xero_account_code")
    active: bool = Field(default=True, alias="is_active")

    @field_validator("accounting_account_id", "account_code", mode="before")
    @classmethod
    def blank_refs_to_none(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @property
    def is_resolved(self) -> bool:
        return self.active and bool(self.accounting_account_id)

    def to_payload(self) -> dict[str, Any]:
        """Upsert body for the staging store."""
        return self.model_dump(by_alias=True)


class PayeeMapping(WireSchema):
    """Ledger payee to accounting contact mapping."""

    ledger_payee_id: str = Field(..., alias="actual_payee_id")
    name: str | None = Field(default=None, alias="actual_payee_name")
    accounting_contact_id: str | None = Field(default=None, alias="xero_contact_id")
    accounting_contact_name: str | None = Field(
        default=None, alias="xero_contact_name"
    )
    active: bool = Field(default=True, alias="is_active")

    @field_validator("accounting_contact_id", mode="before")
    @classmethod
    def blank_refs_to_none(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @property
    def is_resolved(self) -> bool:
        return self.active and bool(self.accounting_contact_id)

    def to_payload(self) -> dict[str, Any]:
        """Upsert body for the staging store."""
        return self.model_dump(by_alias=True)


class MappingBatch(WireSchema):
    """Result of a batch mapping lookup."""

    category_mappings: list[CategoryMapping] = Field(
        default_factory=list, alias="categoryMappings"
    )
    payee_mappings: list[PayeeMapping] = Field(
        default_factory=list, alias="payeeMappings"
    )

    def categories_by_id(self) -> dict[str, CategoryMapping]:
        return {m.ledger_category_id: m for m in self.category_mappings}

    def payees_by_id(self) -> dict[str, PayeeMapping]:
        return {m.ledger_payee_id: m for m in self.payee_mappings}


class BulkItemError(WireSchema):
    """One rejected item from a bulk endpoint."""

    key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "actual_transaction_id",
            "actual_category_id",
            "actual_payee_id",
            "xano_id",
            "id",
            "transaction_id",
        ),
    )
    message: str = Field(
        default="Unknown error",
        validation_alias=AliasChoices("error", "message", "error_message"),
    )

    @field_validator("key", mode="before")
    @classmethod
    def stringify_key(cls, v: Any) -> Any:
        return None if v is None else str(v)


class StoreOutcome(BaseModel):
    """Result of one idempotent create."""

    transaction: Transaction
    created: bool


class BulkStoreResult(WireSchema):
    """Result of a bulk transaction store."""

    stored: list[Transaction] = Field(default_factory=list)
    duplicates: list[Transaction] = Field(default_factory=list)
    errors: list[BulkItemError] = Field(default_factory=list)


class BulkUpdateResult(WireSchema):
    """Result of a bulk mapping, status or import update."""

    updated: list[Any] = Field(default_factory=list)
    errors: list[BulkItemError] = Field(default_factory=list)


class MappingUpsertResult(WireSchema):
    """Result of a bulk category or payee mapping upsert."""

    created: list[Any] = Field(default_factory=list)
    updated: list[Any] = Field(default_factory=list)
    errors: list[BulkItemError] = Field(default_factory=list)


class MissingMappingsReport(WireSchema):
    """Staged transactions grouped by which mapping they lack."""

    category_missing: list[Transaction] = Field(
        default_factory=list, alias="categoryMissing"
    )
    payee_missing: list[Transaction] = Field(default_factory=list, alias="payeeMissing")
    both_missing: list[Transaction] = Field(default_factory=list, alias="bothMissing")


# Accounting system records


class AccountingAccount(WireSchema):
    """Chart-of-accounts entry."""

    id: str = Field(..., alias="AccountID")
    name: str = Field(..., alias="Name")
    code: str | None = Field(default=None, alias="Code")
    type: str | None = Field(default=None, alias="Type")
    status: str | None = Field(default=None, alias="Status")


class AccountingContact(WireSchema):
    """Contact (supplier or customer)."""

    id: str = Field(..., alias="ContactID")
    name: str = Field(..., alias="Name")
    status: str | None = Field(default=None, alias="ContactStatus")


class BankTransactionResult(WireSchema):
    """Created bank transaction."""

    id: str = Field(..., alias="BankTransactionID")
    reference: str | None = Field(default=None, alias="Reference")
    status: str | None = Field(default=None, alias="Status")
    total: Decimal | None = Field(default=None, alias="Total")


# Readiness rules


def is_ready_for_import(transaction: Transaction) -> bool:
    """Single rule deciding whether a staged transaction can be imported.

    A transaction is ready when it has a staging id, a non-blank accounting
    account and contact, and has not been imported yet.
    """
    return (
        transaction.staging_id is not None
        and transaction.has_account
        and transaction.has_contact
        and transaction.status != TransactionStatus.IMPORTED
    )


def build_reference(prefix: str, staging_id: int | str) -> str:
    """Idempotency reference sent to the accounting system."""
    return f"{prefix}-{staging_id}"


def missing_mapping_reason(
    missing_category: bool, missing_payee: bool, still: bool = False
) -> str:
    """Failure reason stored on transactions blocked by missing mappings."""
    if missing_category and missing_payee:
        what = "category and payee"
    elif missing_category:
        what = "category"
    else:
        what = "payee"

    if still:
        return f"Still missing {what} mapping(s) after reprocessing"
    return f"Missing {what} mapping(s)"


MISSING_MAPPING_REASON = re.compile(
    r"^(Missing|Still missing) (category and payee|category|payee) mapping\(s\)"
)


def is_mapping_error(message: str | None) -> bool:
    """True when a stored error message is a ``missing_mapping_reason``."""
    return bool(message and MISSING_MAPPING_REASON.match(message))


# Sync results


class SyncErrorType(str, Enum):
    """Where in the pipeline an error happened."""

    MISSING_MAPPINGS = "MISSING_MAPPINGS"
    FETCH_ERROR = "FETCH_ERROR"
    STORE_ERROR = "STORE_ERROR"
    MAPPING_UPDATE_ERROR = "MAPPING_UPDATE_ERROR"
    STATUS_UPDATE_ERROR = "STATUS_UPDATE_ERROR"
    RESOLUTION_ERROR = "RESOLUTION_ERROR"
    IMPORT_ERROR = "IMPORT_ERROR"
    IMPORT_UPDATE_ERROR = "IMPORT_UPDATE_ERROR"
    SYNC_EXECUTION_ERROR = "SYNC_EXECUTION_ERROR"


class SyncErrorRecord(BaseModel):
    """One itemized error in a sync or reprocessing result."""

    type: SyncErrorType
    message: str
    transaction_id: str | None = None
    staging_id: int | None = None
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def for_transaction(
        cls, error_type: SyncErrorType, message: str, transaction: Transaction
    ) -> "SyncErrorRecord":
        return cls(
            type=error_type,
            message=message,
            transaction_id=transaction.ledger_id,
            staging_id=transaction.staging_id,
        )

    def __str__(self) -> str:
        subject = f" [{self.transaction_id}]" if self.transaction_id else ""
        return f"{self.type.value}{subject}: {self.message}"


class SyncResult(BaseModel):
    """Outcome of one sync run."""

    started_at: datetime = Field(default_factory=datetime.now)
    duration_ms: int = 0
    dry_run: bool = False
    transactions_fetched: int = 0
    transactions_stored: int = 0
    duplicates_skipped: int = 0
    transactions_mapped: int = 0
    transactions_imported: int = 0
    transactions_failed: int = 0
    mappings_resolved: int = 0
    errors: list[SyncErrorRecord] = Field(default_factory=list)

    @property
    def mapping_errors(self) -> list[SyncErrorRecord]:
        return [e for e in self.errors if e.type == SyncErrorType.MISSING_MAPPINGS]

    @property
    def system_errors(self) -> list[SyncErrorRecord]:
        return [e for e in self.errors if e.type != SyncErrorType.MISSING_MAPPINGS]

    @property
    def success(self) -> bool:
        """Missing mappings are expected operational state, not failures."""
        return not self.system_errors

    @property
    def total_errors(self) -> int:
        return len(self.errors)

    def summary(self) -> list[str]:
        """Human-readable summary lines."""
        prefix = "[dry run] " if self.dry_run else ""
        lines = [
            f"{prefix}Sync {'completed' if self.success else 'completed with errors'} "
            f"in {self.duration_ms / 1000:.1f}s",
            f"  Fetched:    {self.transactions_fetched}",
            f"  Stored:     {self.transactions_stored} "
            f"({self.duplicates_skipped} duplicates skipped)",
            f"  Mapped:     {self.transactions_mapped}",
            f"  Imported:   {self.transactions_imported}",
            f"  Failed:     {self.transactions_failed}",
            f"  Mappings resolved: {self.mappings_resolved}",
        ]
        if self.errors:
            lines.append(
                f"  Errors:     {len(self.system_errors)} system, "
                f"{len(self.mapping_errors)} missing mappings"
            )
        return lines


class ReprocessResult(BaseModel):
    """Outcome of one reprocessing pass."""

    started_at: datetime = Field(default_factory=datetime.now)
    duration_ms: int = 0
    dry_run: bool = False
    auto_resolve: bool = True
    transactions_found: int = 0
    transactions_eligible: int = 0
    transactions_processed: int = 0
    transactions_resolved: int = 0
    transactions_imported: int = 0
    transactions_failed: int = 0
    mappings_resolved: int = 0
    missing_categories: dict[str, int] = Field(default_factory=dict)
    missing_payees: dict[str, int] = Field(default_factory=dict)
    errors: list[SyncErrorRecord] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not any(e.type != SyncErrorType.MISSING_MAPPINGS for e in self.errors)

    def summary(self) -> list[str]:
        """Human-readable summary lines."""
        prefix = "[dry run] " if self.dry_run else ""
        return [
            f"{prefix}Reprocessing {'completed' if self.success else 'completed with errors'} "
            f"in {self.duration_ms / 1000:.1f}s",
            f"  Found:      {self.transactions_found} "
            f"({self.transactions_eligible} eligible)",
            f"  Processed:  {self.transactions_processed}",
            f"  Resolved:   {self.transactions_resolved}",
            f"  Imported:   {self.transactions_imported}",
            f"  Failed:     {self.transactions_failed}",
            f"  Mappings resolved: {self.mappings_resolved}",
            f"  Missing:    {len(self.missing_categories)} categories, "
            f"{len(self.missing_payees)} payees",
        ]
