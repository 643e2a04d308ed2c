"""Client for the accounting system (Xero) API.

Requests carry an OAuth2 bearer token from ``TokenManager`` and the tenant
header. Bank transactions are created with an idempotent ``Reference`` built
from the staging ID, so a repeated import is recognisable in the ledger.
"""

import logging
from decimal import Decimal
from typing import Any

import httpx

from ..errors import NotFoundError, ValidationError
from ..ratelimit import RateLimiter
from ..schemas import (
    AccountingAccount,
    AccountingContact,
    BankTransactionResult,
    Transaction,
)
from .base import BaseApiClient
from .oauth import TokenManager

logger = logging.getLogger(__name__)

MAX_REFERENCE_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 4000
MAX_UNIT_AMOUNT = Decimal("999999999.99")
DEFAULT_DESCRIPTION = "Imported from ledger"
# Bank transactions in these states no longer count as imported
INACTIVE_BANK_TRANSACTION_STATUSES = frozenset({"DELETED", "VOIDED"})


def _escape(value: str) -> str:
    return value.replace('"', '\\"')


def _where_name(name: str, exact: bool) -> str:
    escaped = _escape(name)
    return f'Name=="{escaped}"' if exact else f'Name.Contains("{escaped}")'


def build_bank_transaction(
    transaction: Transaction,
    reference: str,
    bank_account_id: str | None = None,
) -> dict[str, Any]:
    """Build and validate a bank transaction payload.

    Spend is a negative amount; the payload always carries the absolute value
    in a single line item.

    Args:
        transaction: A staged transaction with both mappings resolved
        reference: Idempotency reference, ``"{prefix}-{staging_id}"``
        bank_account_id: Bank account the transaction belongs to, if configured

    Returns:
        dict: ``BankTransaction`` body

    Raises:
        ValidationError: If the payload would be rejected by the API
    """
    errors: list[str] = []
    amount = transaction.amount
    unit_amount = abs(amount)

    if amount == 0:
        errors.append("amount must be non-zero")
    if unit_amount > MAX_UNIT_AMOUNT:
        errors.append(f"amount exceeds {MAX_UNIT_AMOUNT}")
    if not transaction.has_account:
        errors.append("accounting account is required")
    if not transaction.has_contact:
        errors.append("accounting contact is required")
    if not reference:
        errors.append("reference is required")
    elif len(reference) > MAX_REFERENCE_LENGTH:
        errors.append(f"reference longer than {MAX_REFERENCE_LENGTH} characters")

    if errors:
        raise ValidationError(
            f"Invalid bank transaction for {transaction.ledger_id}: {'; '.join(errors)}",
            context={"ledger_id": transaction.ledger_id},
        )

    line_item: dict[str, Any] = {
        "Description": (transaction.description or DEFAULT_DESCRIPTION)[
            :MAX_DESCRIPTION_LENGTH
        ],
        "Quantity": 1,
        "UnitAmount": float(unit_amount),
        "AccountID": transaction.accounting_account_ref,
        "TaxType": "NONE",
    }
    if transaction.accounting_account_code:
        line_item["AccountCode"] = transaction.accounting_account_code

    payload: dict[str, Any] = {
        "Type": "SPEND" if amount < 0 else "RECEIVE",
        "Contact": {"ContactID": transaction.accounting_contact_ref},
        "LineItems": [line_item],
        "Date": transaction.transaction_date.isoformat(),
        "Reference": reference,
        "Status": "AUTHORISED",
    }
    if bank_account_id:
        payload["BankAccount"] = {"AccountID": bank_account_id}
    return payload


class AccountingClient(BaseApiClient):
    """Accounts, contacts and bank transactions in the accounting system."""

    api_name = "Accounting"

    def __init__(
        self,
        token_manager: TokenManager,
        tenant_id: str,
        api_url: str = "https://api.xero.com/api.xro/2.0",
        rate_limiter: RateLimiter | None = None,
        bank_account_id: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        super().__init__(
            api_url,
            rate_limiter or RateLimiter("accounting", requests_per_minute=60),
            headers={"Xero-tenant-id": tenant_id},
            timeout=timeout,
            transport=transport,
        )
        self.token_manager = token_manager
        self.tenant_id = tenant_id
        self.bank_account_id = bank_account_id

    def request_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token_manager.ensure_valid_token()}"}

    def create_bank_transaction(
        self, transaction: Transaction, reference: str
    ) -> BankTransactionResult:
        """Create an authorised bank transaction.

        Raises:
            ValidationError: Before dispatch, if the payload is invalid
            FatalProviderError: If the API rejects the transaction
        """
        payload = build_bank_transaction(transaction, reference, self.bank_account_id)
        body = self.put("/BankTransactions", json={"BankTransactions": [payload]})
        created = BankTransactionResult.model_validate(body["BankTransactions"][0])
        logger.info(
            f"Created accounting transaction {created.id} (Reference: {reference})"
        )
        return created

    def find_bank_transaction_by_reference(
        self, reference: str
    ) -> BankTransactionResult | None:
        """Active bank transaction carrying ``reference``, if one exists.

        Deleted and voided transactions are ignored so a reference whose
        earlier import was removed can be imported again.
        """
        body = self.get(
            "/BankTransactions", params={"where": f'Reference=="{_escape(reference)}"'}
        )
        for item in body.get("BankTransactions", []):
            found = BankTransactionResult.model_validate(item)
            if (found.status or "").upper() in INACTIVE_BANK_TRANSACTION_STATUSES:
                continue
            if found.reference == reference:
                return found
        return None

    def search_accounts(
        self, name: str, exact: bool = False, limit: int | None = None
    ) -> list[AccountingAccount]:
        name = (name or "").strip()
        if not name:
            return []
        body = self.get("/Accounts", params={"where": _where_name(name, exact)})
        accounts = [AccountingAccount.model_validate(a) for a in body.get("Accounts", [])]
        if limit:
            accounts = accounts[:limit]
        logger.debug(f"Found {len(accounts)} accounts matching '{name}'")
        return accounts

    def search_contacts(
        self, name: str, exact: bool = False, limit: int | None = None
    ) -> list[AccountingContact]:
        name = (name or "").strip()
        if not name:
            return []
        body = self.get("/Contacts", params={"where": _where_name(name, exact)})
        contacts = [AccountingContact.model_validate(c) for c in body.get("Contacts", [])]
        if limit:
            contacts = contacts[:limit]
        logger.debug(f"Found {len(contacts)} contacts matching '{name}'")
        return contacts

    def get_account(self, account_id: str) -> AccountingAccount | None:
        try:
            body = self.get(f"/Accounts/{account_id}")
        except NotFoundError:
            return None
        accounts = body.get("Accounts") or []
        return AccountingAccount.model_validate(accounts[0]) if accounts else None

    def get_contact(self, contact_id: str) -> AccountingContact | None:
        try:
            body = self.get(f"/Contacts/{contact_id}")
        except NotFoundError:
            return None
        contacts = body.get("Contacts") or []
        return AccountingContact.model_validate(contacts[0]) if contacts else None

    def create_account(
        self, name: str, code: str | None = None, account_type: str = "EXPENSE"
    ) -> AccountingAccount:
        account: dict[str, Any] = {"Name": name, "Type": account_type}
        if code:
            account["Code"] = code
        body = self.put("/Accounts", json={"Accounts": [account]})
        created = AccountingAccount.model_validate(body["Accounts"][0])
        logger.info(f"Created accounting account: {created.name} ({created.code})")
        return created

    def create_contact(self, name: str) -> AccountingContact:
        body = self.put(
            "/Contacts",
            json={"Contacts": [{"Name": name, "IsSupplier": True, "IsCustomer": False}]},
        )
        created = AccountingContact.model_validate(body["Contacts"][0])
        logger.info(f"Created accounting contact: {created.name}")
        return created

    def get_organisation(self) -> dict[str, Any]:
        org = self.get("/Organisation")["Organisations"][0]
        return {
            "name": org.get("Name"),
            "legal_name": org.get("LegalName"),
            "country_code": org.get("CountryCode"),
            "currency_code": org.get("BaseCurrency"),
        }

    def validate_connection(self) -> bool:
        try:
            org = self.get_organisation()
        except Exception as e:
            logger.error(f"❌ Accounting connection test failed: {e}")
            return False
        logger.info(f"✅ Connected to accounting organisation: {org['name']}")
        return True

    def close(self) -> None:
        super().close()
        self.token_manager.close()
