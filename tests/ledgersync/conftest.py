"""Shared pytest fixtures for ledgersync tests.

This module provides common fixtures and builders used across the test
suite: settings isolation, rate limiters that never sleep, and record
factories for ledger and staged transactions.
"""

from collections.abc import Callable, Generator
from datetime import date
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
from pytest_mock import MockerFixture

from ledgersync.config import clear_settings_cache, set_current_profile
from ledgersync.connectors.accounting import AccountingClient
from ledgersync.connectors.ledger import LedgerClient
from ledgersync.connectors.staging import StagingStoreClient
from ledgersync.ratelimit import RateLimiter, RetryPolicy
from ledgersync.schemas import (
    BankTransactionResult,
    BulkUpdateResult,
    LedgerTransaction,
    MappingBatch,
    MappingUpsertResult,
    Transaction,
    TransactionStatus,
)


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def fast_limiter(
    name: str = "test",
    requests_per_minute: int = 6000,
    max_retries: int = 0,
    clock: FakeClock | None = None,
) -> RateLimiter:
    """Rate limiter driven by a fake clock so tests never wait."""
    clock = clock or FakeClock()
    return RateLimiter(
        name,
        requests_per_minute=requests_per_minute,
        retry_policy=RetryPolicy(max_retries=max_retries, base_backoff=0.0, max_jitter=0.0),
        clock=clock,
        sleep=clock.sleep,
        rand=lambda: 0.0,
    )


def ledger_txn(txn_id: str = "t1", **overrides: Any) -> LedgerTransaction:
    """Build a reconciled ledger transaction."""
    data: dict[str, Any] = {
        "id": txn_id,
        "date": date(2025, 1, 15),
        "amount": -4250,
        "notes": "Coffee beans",
        "category": "cat-1",
        "payee": "payee-1",
        "reconciled": True,
    }
    data.update(overrides)
    return LedgerTransaction(**data)


def staged_txn(
    ledger_id: str = "t1", staging_id: int | None = 101, **overrides: Any
) -> Transaction:
    """Build a staged transaction, pending and unmapped by default."""
    data: dict[str, Any] = {
        "staging_id": staging_id,
        "ledger_id": ledger_id,
        "transaction_date": date(2025, 1, 15),
        "amount": Decimal("-42.50"),
        "description": "Coffee beans",
        "category_ref": "cat-1",
        "payee_ref": "payee-1",
        "status": TransactionStatus.PENDING,
    }
    data.update(overrides)
    return Transaction(**data)


def json_transport(
    handler: Callable[[httpx.Request], tuple[int, Any]],
    calls: list[httpx.Request] | None = None,
) -> httpx.MockTransport:
    """MockTransport whose handler returns ``(status, json_body)``."""

    def _handle(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        status, body = handler(request)
        return httpx.Response(status, json=body)

    return httpx.MockTransport(_handle)


@pytest.fixture(autouse=True)
def clean_profile_state() -> Generator[None, None, None]:
    """Automatically clean up profile state before and after each test.

    This fixture:
    - Runs for every test automatically (autouse=True)
    - Clears the settings cache to prevent test pollution
    - Resets current profile to 'test'
    """
    clear_settings_cache()
    set_current_profile("test")

    yield

    clear_settings_cache()
    set_current_profile("test")


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def staging(mocker: MockerFixture) -> MagicMock:
    """Staging store client whose bulk updates succeed."""
    mock = mocker.MagicMock(spec=StagingStoreClient)
    mock.bulk_update_transaction_mappings.return_value = BulkUpdateResult()
    mock.bulk_mark_transactions_failed.return_value = BulkUpdateResult()
    mock.bulk_update_transaction_imports.return_value = BulkUpdateResult()
    mock.batch_get_mappings.return_value = MappingBatch()
    mock.get_all_mappings.return_value = MappingBatch()
    mock.bulk_upsert_category_mappings.return_value = MappingUpsertResult()
    mock.bulk_upsert_payee_mappings.return_value = MappingUpsertResult()
    mock.upsert_category_mapping.side_effect = lambda mapping: mapping
    mock.upsert_payee_mapping.side_effect = lambda mapping: mapping
    return mock


@pytest.fixture
def ledger(mocker: MockerFixture) -> MagicMock:
    return mocker.MagicMock(spec=LedgerClient)


@pytest.fixture
def accounting(mocker: MockerFixture) -> MagicMock:
    """Accounting client that creates ``bt-<staging id>`` bank transactions."""
    mock = mocker.MagicMock(spec=AccountingClient)
    mock.create_bank_transaction.side_effect = lambda txn, ref: BankTransactionResult(
        id=f"bt-{txn.staging_id}", reference=ref
    )
    mock.find_bank_transaction_by_reference.return_value = None
    mock.search_accounts.return_value = []
    mock.search_contacts.return_value = []
    return mock
