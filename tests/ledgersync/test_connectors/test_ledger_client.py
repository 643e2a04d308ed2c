# ruff: noqa: S101
"""Tests for the ledger shim client and status tagging."""

from __future__ import annotations

import json
from datetime import date

import httpx
import pytest
from conftest import fast_limiter, json_transport

from ledgersync.connectors.ledger import LedgerClient, append_tags, status_tags
from ledgersync.errors import NotFoundError
from ledgersync.schemas import TransactionStatus

_TRANSACTIONS = {
    "transactions": [
        {"id": "t1", "date": "2025-01-15", "amount": -4250, "notes": "Beans", "reconciled": True},
        {"id": "t2", "date": "2025-01-16", "amount": -100, "reconciled": False},
        {"id": "t3", "date": "2025-01-17", "amount": 9900, "category": "", "reconciled": True},
    ]
}


def _client(handler, calls: list[httpx.Request] | None = None) -> LedgerClient:
    return LedgerClient(
        "http://ledger.local:3000",
        "ledger-key",
        rate_limiter=fast_limiter("ledger"),
        transport=json_transport(handler, calls),
    )


class TestTags:
    """Status tags appended to ledger notes."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("status", "tags"),
        [
            (TransactionStatus.PENDING, "#xano"),
            (TransactionStatus.MAPPED, "#xano #mapped"),
            (TransactionStatus.IMPORTED, "#xano #mapped #xero"),
            (TransactionStatus.FAILED, "#xano #failed"),
        ],
    )
    def test_status_tags(self, status: TransactionStatus, tags: str) -> None:
        assert status_tags(status) == tags

    @pytest.mark.unit
    def test_append_keeps_text_and_skips_present_tags(self) -> None:
        assert append_tags("Lunch #XANO", "#xano #mapped") == "Lunch #XANO #mapped"
        assert append_tags(None, "#xano") == "#xano"
        assert append_tags("Lunch", "") == "Lunch"


class TestLedgerClient:
    """Reads and tag writes through the shim."""

    @pytest.mark.unit
    def test_reconciled_transactions_only(self) -> None:
        calls: list[httpx.Request] = []
        client = _client(lambda r: (200, _TRANSACTIONS), calls)

        transactions = client.get_reconciled_transactions("group-1", date(2025, 1, 10))

        assert [t.id for t in transactions] == ["t1", "t3"]
        assert transactions[1].category is None
        params = calls[0].url.params
        assert params["categoryGroupId"] == "group-1"
        assert params["since"] == "2025-01-10T00:00:00Z"
        assert calls[0].headers["x-api-key"] == "ledger-key"

    @pytest.mark.unit
    def test_category_group_lookup(self) -> None:
        client = _client(
            lambda r: (200, {"groups": [{"id": "g1", "name": "Business"}]})
        )
        assert client.find_category_group_by_name("Business").id == "g1"
        assert client.find_category_group_by_name("Personal") is None

    @pytest.mark.unit
    def test_categories_filtered_by_group(self) -> None:
        client = _client(
            lambda r: (
                200,
                {
                    "categories": [
                        {"id": "c1", "name": "Food", "cat_group": "g1"},
                        {"id": "c2", "name": "Rent", "group_id": "g2"},
                    ]
                },
            )
        )
        assert [c.id for c in client.get_categories("g2")] == ["c2"]

    @pytest.mark.unit
    def test_tag_status_writes_notes(self) -> None:
        calls: list[httpx.Request] = []
        client = _client(lambda r: (200, {"ok": True}), calls)

        notes = client.tag_status("t1", TransactionStatus.IMPORTED, "Beans #xano")

        assert notes == "Beans #xano #mapped #xero"
        assert calls[0].method == "PUT"
        assert calls[0].url.path == "/transactions/t1"
        assert json.loads(calls[0].content) == {"notes": "Beans #xano #mapped #xero"}

    @pytest.mark.unit
    def test_tagging_is_idempotent(self) -> None:
        calls: list[httpx.Request] = []
        client = _client(lambda r: (200, {}), calls)

        client.tag_status("t1", TransactionStatus.PENDING, "Beans #xano")

        assert calls == []

    @pytest.mark.unit
    def test_tag_fetches_notes_when_unknown(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request):
            if request.method == "GET":
                return 200, _TRANSACTIONS
            return 200, {}

        client = _client(handler, calls)
        assert client.tag_status("t1", TransactionStatus.PENDING) == "Beans #xano"
        assert [c.method for c in calls] == ["GET", "PUT"]

    @pytest.mark.unit
    def test_tag_unknown_transaction(self) -> None:
        client = _client(lambda r: (200, {"transactions": []}))
        with pytest.raises(NotFoundError):
            client.tag_status("missing", TransactionStatus.PENDING)
