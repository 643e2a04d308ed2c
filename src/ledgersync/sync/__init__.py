"""Sync pipeline: orchestration, reprocessing and reporting."""

from .importer import ImportOutcome, TransactionImporter
from .manager import SyncManager
from .orchestrator import SyncOrchestrator
from .reprocessing import ReprocessingEngine
from .report import generate_reprocessing_report

__all__ = [
    "ImportOutcome",
    "ReprocessingEngine",
    "SyncManager",
    "SyncOrchestrator",
    "TransactionImporter",
    "generate_reprocessing_report",
]
