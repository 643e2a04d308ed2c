"""LedgerSync CLI package.

This package provides the command-line interface for running syncs,
reprocessing parked transactions and authorizing the accounting system.
"""

from .main import app, main

__all__ = ["app", "main"]
