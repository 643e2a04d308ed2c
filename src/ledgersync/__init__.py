"""LedgerSync: move reconciled budget transactions into an accounting system.

Transactions are pulled from the budgeting ledger, stored idempotently in a
staging store that tracks sync state and entity mappings, and delivered to the
accounting system once their category and payee mappings are resolved.
"""

__version__ = "0.1.0"
