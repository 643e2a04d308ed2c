"""Reprocessing report: sync health, missing mappings and failure analysis."""

import logging
from collections import Counter
from collections.abc import Sequence
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..connectors.staging import StagingStoreClient
from ..schemas import (
    MissingMappingsReport,
    Transaction,
    TransactionStatus,
    is_mapping_error,
)

logger = logging.getLogger(__name__)

TOP_ERROR_PATTERNS = 5
ERROR_PATTERN_LENGTH = 100
SUCCESS_RATE_THRESHOLD = 0.8
API_ERROR_THRESHOLD = 5
PENDING_THRESHOLD = 10


class ErrorCategory(str, Enum):
    MISSING_MAPPINGS = "MISSING_MAPPINGS"
    ACCOUNTING_API_ERROR = "ACCOUNTING_API_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    OTHER_ERROR = "OTHER_ERROR"


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class Recommendation(BaseModel):
    type: str
    priority: Priority
    message: str
    action: str
    impact: str


class ErrorAnalysis(BaseModel):
    total_failed: int = 0
    error_types: dict[ErrorCategory, int] = Field(default_factory=dict)
    common_patterns: dict[str, int] = Field(default_factory=dict)
    oldest_failure: datetime | None = None
    newest_failure: datetime | None = None


class ReportSummary(BaseModel):
    total_transactions: int = 0
    imported: int = 0
    pending: int = 0
    failed: int = 0

    @property
    def success_rate(self) -> float:
        if not self.total_transactions:
            return 0.0
        return self.imported / self.total_transactions


class MissingMappingSummary(BaseModel):
    categories_needing_mapping: int = 0
    payees_needing_mapping: int = 0
    blocked_by_categories: int = 0
    blocked_by_payees: int = 0
    missing_both: int = 0


class MissingEntity(BaseModel):
    id: str
    name: str | None = None
    transaction_count: int = 0


class FailureDetail(BaseModel):
    transaction_id: str
    staging_id: int | None = None
    error_message: str | None = None
    failed_at: datetime | None = None


class ReportDetails(BaseModel):
    missing_categories: list[MissingEntity] = Field(default_factory=list)
    missing_payees: list[MissingEntity] = Field(default_factory=list)
    recent_failures: list[FailureDetail] = Field(default_factory=list)


class ReprocessingReport(BaseModel):
    generated_at: datetime = Field(default_factory=datetime.now)
    since: date | None = None
    summary: ReportSummary
    missing_mappings: MissingMappingSummary
    error_analysis: ErrorAnalysis
    recommendations: list[Recommendation] = Field(default_factory=list)
    details: ReportDetails | None = None


def categorize_error(message: str | None) -> ErrorCategory:
    """Bucket a stored error message by its likely cause.

    Examples:
        >>> categorize_error("Missing category and payee mapping(s)")
        <ErrorCategory.MISSING_MAPPINGS: 'MISSING_MAPPINGS'>
        >>> categorize_error("Request timeout").value
        'NETWORK_ERROR'
    """
    if is_mapping_error(message):
        return ErrorCategory.MISSING_MAPPINGS
    text = (message or "").lower()
    if ("accounting" in text or "xero" in text) and ("api" in text or "import" in text):
        return ErrorCategory.ACCOUNTING_API_ERROR
    if "validation" in text or "invalid" in text:
        return ErrorCategory.VALIDATION_ERROR
    if "network" in text or "timeout" in text or "connection" in text:
        return ErrorCategory.NETWORK_ERROR
    if "rate limit" in text or "429" in text:
        return ErrorCategory.RATE_LIMIT_ERROR
    return ErrorCategory.OTHER_ERROR


def analyze_errors(failed: Sequence[Transaction]) -> ErrorAnalysis:
    """Count error categories and the most common messages among failures."""
    types: Counter[ErrorCategory] = Counter()
    patterns: Counter[str] = Counter()
    for txn in failed:
        if not txn.error_message:
            continue
        types[categorize_error(txn.error_message)] += 1
        patterns[txn.error_message[:ERROR_PATTERN_LENGTH]] += 1

    stamps = [t.created_at for t in failed if t.created_at is not None]
    return ErrorAnalysis(
        total_failed=len(failed),
        error_types=dict(types),
        common_patterns=dict(patterns.most_common(TOP_ERROR_PATTERNS)),
        oldest_failure=min(stamps) if stamps else None,
        newest_failure=max(stamps) if stamps else None,
    )


def summarize_missing(report: MissingMappingsReport) -> MissingMappingSummary:
    categories = {
        t.category_ref
        for t in [*report.category_missing, *report.both_missing]
        if t.category_ref
    }
    payees = {
        t.payee_ref for t in [*report.payee_missing, *report.both_missing] if t.payee_ref
    }
    return MissingMappingSummary(
        categories_needing_mapping=len(categories),
        payees_needing_mapping=len(payees),
        blocked_by_categories=len(report.category_missing) + len(report.both_missing),
        blocked_by_payees=len(report.payee_missing) + len(report.both_missing),
        missing_both=len(report.both_missing),
    )


def generate_recommendations(
    summary: ReportSummary,
    missing: MissingMappingSummary,
    errors: ErrorAnalysis,
) -> list[Recommendation]:
    """Actionable follow-ups, most urgent first."""
    recommendations: list[Recommendation] = []

    if missing.categories_needing_mapping:
        recommendations.append(
            Recommendation(
                type="MISSING_CATEGORY_MAPPINGS",
                priority=Priority.HIGH,
                message=(
                    f"{missing.categories_needing_mapping} categories need "
                    "accounting account mappings"
                ),
                action="Review and update category mappings in the staging store",
                impact=f"{missing.blocked_by_categories} transactions are blocked",
            )
        )
    if missing.payees_needing_mapping:
        recommendations.append(
            Recommendation(
                type="MISSING_PAYEE_MAPPINGS",
                priority=Priority.HIGH,
                message=(
                    f"{missing.payees_needing_mapping} payees need "
                    "accounting contact mappings"
                ),
                action="Review and update payee mappings in the staging store",
                impact=f"{missing.blocked_by_payees} transactions are blocked",
            )
        )

    api_errors = errors.error_types.get(ErrorCategory.ACCOUNTING_API_ERROR, 0)
    if api_errors > API_ERROR_THRESHOLD:
        recommendations.append(
            Recommendation(
                type="ACCOUNTING_API_ISSUES",
                priority=Priority.MEDIUM,
                message=f"{api_errors} transactions failed due to accounting API errors",
                action="Check accounting API credentials and connection status",
                impact="Transactions may need to be retried after fixing API issues",
            )
        )

    rate_limited = errors.error_types.get(ErrorCategory.RATE_LIMIT_ERROR, 0)
    if rate_limited:
        recommendations.append(
            Recommendation(
                type="RATE_LIMITING",
                priority=Priority.LOW,
                message=f"{rate_limited} transactions failed due to rate limiting",
                action="Reduce batch sizes or requests per minute",
                impact="Sync performance may be impacted",
            )
        )

    if summary.success_rate < SUCCESS_RATE_THRESHOLD:
        recommendations.append(
            Recommendation(
                type="LOW_SUCCESS_RATE",
                priority=Priority.HIGH,
                message=(
                    f"Success rate is {summary.success_rate * 100:.1f}% "
                    f"(below {SUCCESS_RATE_THRESHOLD * 100:.0f}% threshold)"
                ),
                action="Resolve mapping issues and check API connectivity",
                impact="Many transactions are not reaching the accounting system",
            )
        )

    if summary.pending > PENDING_THRESHOLD:
        recommendations.append(
            Recommendation(
                type="PENDING_TRANSACTIONS",
                priority=Priority.MEDIUM,
                message=f"{summary.pending} transactions are pending processing",
                action="Run reprocessing to resolve pending transactions",
                impact="Pending transactions do not appear in the accounting system",
            )
        )

    return recommendations


def _count(stats: dict[str, Any], *keys: str) -> int:
    for key in keys:
        value = stats.get(key)
        if value is not None:
            return int(value)
    return 0


def _missing_entities(
    transactions: Sequence[Transaction], category: bool
) -> list[MissingEntity]:
    counts: Counter[str] = Counter()
    names: dict[str, str | None] = {}
    for txn in transactions:
        ref = txn.category_ref if category else txn.payee_ref
        if not ref:
            continue
        counts[ref] += 1
        names.setdefault(ref, txn.category_name if category else txn.payee_name)
    return [
        MissingEntity(id=ref, name=names[ref], transaction_count=n)
        for ref, n in counts.most_common()
    ]


def generate_reprocessing_report(
    staging: StagingStoreClient,
    since: date | None = None,
    include_details: bool = False,
) -> ReprocessingReport:
    """Build a report on sync health from the staging store.

    Args:
        staging: Staging store client
        since: Only count statistics from this date
        include_details: Add per-entity and recent failure details

    Returns:
        ReprocessingReport: Summary, missing mappings, error analysis and
            recommendations

    Raises:
        LedgerSyncError: If the staging store cannot be queried
    """
    try:
        stats = staging.get_sync_statistics(since=since)
        missing = staging.get_transactions_with_missing_mappings(limit=200)
        failed = staging.get_transactions_for_reprocessing(
            limit=100, statuses=[TransactionStatus.FAILED]
        )
    except Exception as e:
        logger.error(f"❌ Failed to generate reprocessing report: {e}")
        raise

    summary = ReportSummary(
        total_transactions=_count(stats, "total_transactions", "totalTransactions"),
        imported=_count(stats, "imported_transactions", "importedTransactions"),
        pending=_count(stats, "pending_transactions", "pendingTransactions"),
        failed=_count(stats, "failed_transactions", "failedTransactions"),
    )
    missing_summary = summarize_missing(missing)
    analysis = analyze_errors(failed)

    report = ReprocessingReport(
        since=since,
        summary=summary,
        missing_mappings=missing_summary,
        error_analysis=analysis,
        recommendations=generate_recommendations(summary, missing_summary, analysis),
    )

    if include_details:
        report.details = ReportDetails(
            missing_categories=_missing_entities(
                [*missing.category_missing, *missing.both_missing], category=True
            ),
            missing_payees=_missing_entities(
                [*missing.payee_missing, *missing.both_missing], category=False
            ),
            recent_failures=[
                FailureDetail(
                    transaction_id=t.ledger_id,
                    staging_id=t.staging_id,
                    error_message=t.error_message,
                    failed_at=t.updated_at or t.created_at,
                )
                for t in failed[:10]
            ],
        )

    logger.info(
        f"Reprocessing report generated: {summary.success_rate * 100:.2f}% success rate, "
        f"{missing_summary.categories_needing_mapping} categories need mapping"
    )
    return report
