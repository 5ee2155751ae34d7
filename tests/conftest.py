"""
Shared fixtures: an in-memory record store, a scriptable ledger and a
seeded set of profiles.
"""

import asyncio
import os
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

os.environ.setdefault("JWT_SECRET", "test-secret-key-with-at-least-32-bytes!")
os.environ.setdefault("OPERATOR_API_KEY", "operator-key")

from factora.config import get_settings  # noqa: E402
from factora.domain.errors import ConflictError, LedgerError, LedgerErrorKind, StoreError  # noqa: E402
from factora.domain.models import (  # noqa: E402
    AcknowledgementRecord,
    Invoice,
    InvoiceStatus,
    Profile,
    PurchaseRecord,
    Role,
    UpdateResult,
)
from factora.infrastructure.store import InvoiceStore, check_update_fields  # noqa: E402
from factora.services.identity import Identity  # noqa: E402
from factora.services.ledger import LedgerClient, LedgerReceipt, OnChainInvoice, PurchaseOrder  # noqa: E402
from factora.services.lifecycle import LifecycleEngine  # noqa: E402
from factora.services.reconciliation import ReconciliationGuard  # noqa: E402

get_settings.cache_clear()


class InMemoryInvoiceStore(InvoiceStore):
    """
    Dict-backed store with the same conditional-write contract as SQL.

    There is no await between the status check and the write, so the
    compare-and-set is atomic on a single event loop.

    fail_statuses makes any update that writes one of those statuses raise
    StoreError, to simulate the store going away mid-purchase.
    """

    def __init__(self) -> None:
        self.invoices: dict[str, Invoice] = {}
        self.profiles: dict[str, Profile] = {}
        self.purchases: dict[str, PurchaseRecord] = {}
        self.acknowledgements: list[AcknowledgementRecord] = []
        self.fail_statuses: set[InvoiceStatus] = set()
        self.update_calls = 0

    def seed_profile(self, profile: Profile) -> Profile:
        self.profiles[profile.id] = profile
        return profile

    async def insert_invoice(self, invoice: Invoice) -> Invoice:
        now = datetime.now(timezone.utc)
        stored = replace(invoice, created_at=now, updated_at=now)
        self.invoices[stored.id] = stored
        return stored

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        return self.invoices.get(invoice_id)

    async def list_invoices(
        self,
        *,
        status: InvoiceStatus | None = None,
        created_by: str | None = None,
        buyer_email: str | None = None,
    ) -> list[Invoice]:
        matches = [
            invoice for invoice in self.invoices.values()
            if (status is None or invoice.status is status)
            and (created_by is None or invoice.created_by == created_by)
            and (buyer_email is None or invoice.buyer_email == buyer_email)
        ]
        return sorted(matches, key=lambda i: i.due_date)

    async def update(
        self,
        invoice_id: str,
        expected_status: InvoiceStatus,
        fields: dict[str, Any],
        purchase: PurchaseRecord | None = None,
    ) -> UpdateResult:
        check_update_fields(fields)
        self.update_calls += 1
        if fields.get("status") in self.fail_statuses:
            raise StoreError("Store unavailable", detail="injected failure")

        current = self.invoices.get(invoice_id)
        if current is None:
            return UpdateResult(applied=False, current_status=None)
        if current.status is not expected_status:
            return UpdateResult(applied=False, current_status=current.status)
        if purchase is not None and invoice_id in self.purchases:
            raise StoreError("Duplicate purchase record")

        updated = replace(current, **fields, updated_at=datetime.now(timezone.utc))
        self.invoices[invoice_id] = updated
        if purchase is not None:
            self.purchases[invoice_id] = purchase
        return UpdateResult(applied=True, current_status=updated.status)

    async def get_purchase(self, invoice_id: str) -> PurchaseRecord | None:
        return self.purchases.get(invoice_id)

    async def record_acknowledgement(self, record: AcknowledgementRecord) -> None:
        self.acknowledgements.append(record)

    async def get_profile(self, profile_id: str) -> Profile | None:
        return self.profiles.get(profile_id)

    async def insert_profile(self, profile: Profile) -> Profile:
        if profile.id in self.profiles or any(p.email == profile.email for p in self.profiles.values()):
            raise ConflictError("A profile already exists for this identity or email")
        self.profiles[profile.id] = profile
        return profile

    async def update_profile_wallet(self, profile_id: str, wallet_address: str | None) -> Profile | None:
        current = self.profiles.get(profile_id)
        if current is None:
            return None
        self.profiles[profile_id] = replace(current, wallet_address=wallet_address)
        return self.profiles[profile_id]


class FakeLedger(LedgerClient):
    """
    Scriptable marketplace ledger.

    - tx_hash: hash returned by the next successful purchase
    - failure: LedgerErrorKind raised by purchases instead of confirming
    - hold: when set to an asyncio.Event, purchases wait on it first
    - list_failure: LedgerErrorKind raised by list_invoice before publishing
    """

    def __init__(self) -> None:
        self.listings: dict[str, Decimal] = {}
        self.sold: dict[str, str] = {}
        self.tx_hash = "0xabc"
        self.failure: LedgerErrorKind | None = None
        self.list_failure: LedgerErrorKind | None = None
        self.hold: asyncio.Event | None = None
        self.orders: list[PurchaseOrder] = []
        self.list_calls: list[tuple[str, Decimal]] = []

    async def list_invoice(self, invoice_id: str, price: Decimal) -> str:
        self.list_calls.append((invoice_id, price))
        if self.list_failure is not None:
            raise LedgerError(self.list_failure, f"Listing failed: {self.list_failure.value}")
        self.listings[invoice_id] = price
        return f"0xlist{len(self.list_calls)}"

    async def purchase_invoice(self, order: PurchaseOrder) -> LedgerReceipt:
        self.orders.append(order)
        if self.hold is not None:
            await self.hold.wait()
        if self.failure is not None:
            raise LedgerError(self.failure, f"Purchase failed: {self.failure.value}")
        self.sold[order.invoice_id] = order.buyer_wallet or "rInvestor"
        return LedgerReceipt(
            invoice_id=order.invoice_id,
            tx_hash=self.tx_hash,
            buyer=order.buyer_wallet,
            price=order.price,
            timestamp=datetime.now(timezone.utc),
        )

    async def get_invoice(self, invoice_id: str) -> OnChainInvoice | None:
        if invoice_id not in self.listings and invoice_id not in self.sold:
            return None
        return OnChainInvoice(
            invoice_id=invoice_id,
            owner="rMarketplace",
            price=self.listings.get(invoice_id),
            is_sold=invoice_id in self.sold,
            buyer=self.sold.get(invoice_id),
        )

    async def is_invoice_available(self, invoice_id: str) -> bool:
        return invoice_id in self.listings and invoice_id not in self.sold

    async def prepare_purchase(self, invoice_id: str, price: Decimal, buyer_wallet: str) -> dict[str, Any]:
        return {
            "TransactionType": "NFTokenAcceptOffer",
            "Account": buyer_wallet,
            "NFTokenSellOffer": f"OFFER-{invoice_id}",
            "AmountDrops": str(int(price * 500000)),
        }


MSME = Profile(id="msme-1", email="owner@msme.example", role=Role.MSME)
OTHER_MSME = Profile(id="msme-2", email="rival@msme.example", role=Role.MSME)
BUYER = Profile(id="buyer-1", email="ap@buyer.example", role=Role.BUYER)
OTHER_BUYER = Profile(id="buyer-2", email="someone@else.example", role=Role.BUYER)
INVESTOR = Profile(
    id="investor-1",
    email="fund@investor.example",
    role=Role.INVESTOR,
    wallet_address="rInvestorOne1111111111111111",
)
OTHER_INVESTOR = Profile(
    id="investor-2",
    email="desk@investor.example",
    role=Role.INVESTOR,
    wallet_address="rInvestorTwo2222222222222222",
)


@pytest.fixture()
def store() -> InMemoryInvoiceStore:
    store = InMemoryInvoiceStore()
    for profile in (MSME, OTHER_MSME, BUYER, OTHER_BUYER, INVESTOR, OTHER_INVESTOR):
        store.seed_profile(profile)
    return store


@pytest.fixture()
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture()
def engine(store) -> LifecycleEngine:
    return LifecycleEngine(store)


@pytest.fixture()
def guard(engine, ledger) -> ReconciliationGuard:
    return ReconciliationGuard(engine, ledger, confirmation_timeout=1.0)


@pytest.fixture()
def msme() -> Identity:
    return Identity(subject=MSME.id, email=MSME.email)


@pytest.fixture()
def other_msme() -> Identity:
    return Identity(subject=OTHER_MSME.id, email=OTHER_MSME.email)


@pytest.fixture()
def buyer() -> Identity:
    return Identity(subject=BUYER.id, email=BUYER.email)


@pytest.fixture()
def other_buyer() -> Identity:
    return Identity(subject=OTHER_BUYER.id, email=OTHER_BUYER.email)


@pytest.fixture()
def investor() -> Identity:
    return Identity(subject=INVESTOR.id, email=INVESTOR.email)


@pytest.fixture()
def other_investor() -> Identity:
    return Identity(subject=OTHER_INVESTOR.id, email=OTHER_INVESTOR.email)


@pytest.fixture()
def system() -> Identity:
    return Identity.system()


def invoice_payload(**overrides: Any) -> dict[str, Any]:
    payload = {
        "invoice_number": "INV-2024-001",
        "amount": "10000",
        "due_date": date(2030, 6, 30).isoformat(),
        "buyer_email": BUYER.email,
        "pdf_reference": "invoices/INV-2024-001.pdf",
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def make_invoice(engine, guard, msme, buyer):
    """
    Build an invoice driven through the real transitions up to a status.

    Usage: make_invoice("Listed", price="9000")
    """

    def _make(status: str = "Pending", price: str = "9000", **payload: Any) -> Invoice:
        async def build() -> Invoice:
            invoice = await engine.create(msme, invoice_payload(**payload))
            if status in ("Acknowledged", "Listed"):
                invoice = (await engine.acknowledge(buyer, invoice.id)).invoice
            if status == "Listed":
                invoice = (await guard.list_and_publish(msme, invoice.id, price)).invoice
            return invoice

        return asyncio.run(build())

    return _make


@pytest.fixture()
def invoice_data():
    """Factory for create payloads: invoice_data(amount="500")."""
    return invoice_payload
