"""Tests for the SQLAlchemy record store against SQLite."""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from factora.domain.errors import ConflictError
from factora.domain.models import Invoice, InvoiceStatus, Profile, PurchaseRecord, Role
from factora.infrastructure.database import SqlInvoiceStore, init_db
from factora.services.identity import Identity
from factora.services.lifecycle import LifecycleEngine


@pytest.fixture()
def sql_store(tmp_path) -> SqlInvoiceStore:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'factora.db'}", poolclass=NullPool)
    asyncio.run(init_db(engine))
    store = SqlInvoiceStore(async_sessionmaker(engine, expire_on_commit=False))

    async def seed():
        await store.insert_profile(Profile(id="msme-1", email="owner@msme.example", role=Role.MSME))
        await store.insert_profile(Profile(id="buyer-1", email="ap@buyer.example", role=Role.BUYER))
        await store.insert_profile(Profile(id="investor-1", email="fund@investor.example", role=Role.INVESTOR))

    asyncio.run(seed())
    return store


def _invoice(invoice_id: str, due: date) -> Invoice:
    return Invoice(
        id=invoice_id,
        invoice_number=f"INV-{invoice_id}",
        amount=Decimal("10000.00"),
        due_date=due,
        buyer_email="ap@buyer.example",
        created_by="msme-1",
    )


def test_profile_roundtrip_and_duplicates(sql_store):
    profile = asyncio.run(sql_store.get_profile("buyer-1"))
    assert profile.role is Role.BUYER
    assert profile.email == "ap@buyer.example"
    assert asyncio.run(sql_store.get_profile("nobody")) is None

    with pytest.raises(ConflictError):
        asyncio.run(sql_store.insert_profile(Profile(id="buyer-2", email="ap@buyer.example", role=Role.BUYER)))


def test_invoices_listed_by_due_date(sql_store):
    async def scenario():
        await sql_store.insert_invoice(_invoice("late", date(2030, 9, 1)))
        await sql_store.insert_invoice(_invoice("early", date(2030, 1, 1)))
        return (
            await sql_store.list_invoices(created_by="msme-1"),
            await sql_store.list_invoices(status=InvoiceStatus.LISTED),
            await sql_store.get_invoice("early"),
        )

    mine, listed, early = asyncio.run(scenario())
    assert [i.id for i in mine] == ["early", "late"]
    assert listed == []
    assert early.amount == Decimal("10000.00")
    assert early.status is InvoiceStatus.PENDING


def test_conditional_update(sql_store):
    async def scenario():
        await sql_store.insert_invoice(_invoice("inv-1", date(2030, 1, 1)))
        fields = {"status": InvoiceStatus.ACKNOWLEDGED, "buyer_acknowledged": True}
        first = await sql_store.update("inv-1", InvoiceStatus.PENDING, fields)
        second = await sql_store.update("inv-1", InvoiceStatus.PENDING, fields)
        missing = await sql_store.update("nope", InvoiceStatus.PENDING, fields)
        return first, second, missing

    first, second, missing = asyncio.run(scenario())
    assert first.applied and first.current_status is InvoiceStatus.ACKNOWLEDGED
    assert not second.applied and second.current_status is InvoiceStatus.ACKNOWLEDGED
    assert not missing.applied and missing.current_status is None


def test_update_rejects_immutable_fields(sql_store):
    with pytest.raises(ValueError):
        asyncio.run(sql_store.update("inv-1", InvoiceStatus.PENDING, {"amount": Decimal("1")}))


def test_purchase_written_only_when_update_applies(sql_store):
    record = PurchaseRecord(
        invoice_id="inv-1",
        investor_id="investor-1",
        tx_hash="0xabc",
        timestamp=datetime.now(timezone.utc),
    )

    async def scenario():
        await sql_store.insert_invoice(_invoice("inv-1", date(2030, 1, 1)))
        result = await sql_store.update(
            "inv-1", InvoiceStatus.SETTLING, {"status": InvoiceStatus.SOLD, "blockchain_tx_hash": "0xabc"},
            purchase=record,
        )
        return result, await sql_store.get_purchase("inv-1")

    result, purchase = asyncio.run(scenario())
    assert not result.applied
    assert purchase is None


def test_full_lifecycle_on_sql(sql_store):
    engine = LifecycleEngine(sql_store)
    msme = Identity(subject="msme-1")
    buyer = Identity(subject="buyer-1")
    investor = Identity(subject="investor-1")

    async def scenario():
        invoice = await engine.create(msme, {
            "invoice_number": "INV-9",
            "amount": "10000",
            "due_date": "2030-06-30",
            "buyer_email": "AP@buyer.example",
        })
        await engine.acknowledge(buyer, invoice.id)
        await engine.list_invoice(msme, invoice.id, "9000")
        start = await engine.begin_settlement(investor, invoice.id)
        await engine.commit_settlement(start.actor, invoice.id, "0xabc", investor.subject)
        return (
            await sql_store.get_invoice(invoice.id),
            await sql_store.get_purchase(invoice.id),
        )

    invoice, purchase = asyncio.run(scenario())
    assert invoice.status is InvoiceStatus.SOLD
    assert invoice.listed_price == Decimal("9000.00")
    assert invoice.blockchain_tx_hash == "0xabc"
    assert invoice.settling_investor_id == "investor-1"
    assert purchase.investor_id == "investor-1"
    assert purchase.tx_hash == "0xabc"


def test_concurrent_settlement_has_one_winner(sql_store):
    engine = LifecycleEngine(sql_store)
    msme = Identity(subject="msme-1")
    buyer = Identity(subject="buyer-1")
    first = Identity(subject="investor-1")
    second = Identity(subject="investor-2")

    async def scenario():
        await sql_store.insert_profile(Profile(id="investor-2", email="desk@investor.example", role=Role.INVESTOR))
        invoice = await engine.create(msme, {
            "invoice_number": "INV-10",
            "amount": "10000",
            "due_date": "2030-06-30",
            "buyer_email": "ap@buyer.example",
        })
        await engine.acknowledge(buyer, invoice.id)
        await engine.list_invoice(msme, invoice.id, "9000")
        outcomes = await asyncio.gather(
            engine.begin_settlement(first, invoice.id),
            engine.begin_settlement(second, invoice.id),
            return_exceptions=True,
        )
        return outcomes, await sql_store.get_invoice(invoice.id)

    outcomes, invoice = asyncio.run(scenario())
    winners = [o for o in outcomes if not isinstance(o, BaseException)]
    losers = [o for o in outcomes if isinstance(o, BaseException)]

    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], ConflictError)
    assert invoice.status is InvoiceStatus.SETTLING
    assert invoice.settling_investor_id == winners[0].actor.actor_id


def test_profile_wallet_update(sql_store):
    updated = asyncio.run(sql_store.update_profile_wallet("investor-1", "rFundWallet111111111111111"))
    assert updated.wallet_address == "rFundWallet111111111111111"
    assert updated.role is Role.INVESTOR
    assert asyncio.run(sql_store.get_profile("investor-1")).wallet_address == "rFundWallet111111111111111"
    assert asyncio.run(sql_store.update_profile_wallet("nobody", None)) is None
