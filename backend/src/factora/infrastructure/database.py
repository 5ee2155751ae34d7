"""
Database configuration, ORM rows and the SQL-backed record store.

Uses async SQLAlchemy for non-blocking database operations.
Invoices are never deleted; purchase and acknowledgement rows are
append-only and form the audit trail.

Design Decisions:
- AsyncSession for non-blocking operations
- Connection pooling with sensible defaults
- Explicit transaction per store call
- Conditional UPDATE ... WHERE status = :expected as the only
  concurrency control
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Numeric, String, select, update
from sqlalchemy.exc import IntegrityError as SQLIntegrityError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from factora.config import get_settings
from factora.domain.errors import ConflictError, StoreError
from factora.domain.models import (
    AcknowledgementRecord,
    Invoice,
    InvoiceStatus,
    Profile,
    PurchaseRecord,
    Role,
    UpdateResult,
)
from factora.infrastructure.store import InvoiceStore, check_update_fields

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class ProfileRow(Base):
    """Authoritative identity record; the only source of a caller's role."""
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    role: Mapped[str] = mapped_column(String(16))  # msme, buyer, investor
    wallet_address: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_domain(self) -> Profile:
        return Profile(
            id=self.id,
            email=self.email,
            role=Role(self.role),
            wallet_address=self.wallet_address,
            created_at=self.created_at,
        )


class InvoiceRow(Base):
    """
    Invoice lifecycle row.

    Status changes only through conditional updates keyed on the
    expected current status.
    """
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(64))
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    due_date: Mapped[date] = mapped_column(Date, index=True)
    buyer_email: Mapped[str] = mapped_column(String(320), index=True)
    created_by: Mapped[str] = mapped_column(String(64), ForeignKey("profiles.id"), index=True)
    status: Mapped[str] = mapped_column(String(32), index=True)
    buyer_acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
    listed_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    pdf_reference: Mapped[str | None] = mapped_column(String(512))
    blockchain_tx_hash: Mapped[str | None] = mapped_column(String(128))
    settling_investor_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    @classmethod
    def from_domain(cls, invoice: Invoice) -> "InvoiceRow":
        return cls(
            id=invoice.id,
            invoice_number=invoice.invoice_number,
            amount=invoice.amount,
            due_date=invoice.due_date,
            buyer_email=invoice.buyer_email,
            created_by=invoice.created_by,
            status=invoice.status.value,
            buyer_acknowledged=invoice.buyer_acknowledged,
            listed_price=invoice.listed_price,
            pdf_reference=invoice.pdf_reference,
            blockchain_tx_hash=invoice.blockchain_tx_hash,
            settling_investor_id=invoice.settling_investor_id,
        )

    def to_domain(self) -> Invoice:
        return Invoice(
            id=self.id,
            invoice_number=self.invoice_number,
            amount=self.amount,
            due_date=self.due_date,
            buyer_email=self.buyer_email,
            created_by=self.created_by,
            status=InvoiceStatus(self.status),
            buyer_acknowledged=self.buyer_acknowledged,
            listed_price=self.listed_price,
            pdf_reference=self.pdf_reference,
            blockchain_tx_hash=self.blockchain_tx_hash,
            settling_investor_id=self.settling_investor_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class PurchaseRow(Base):
    """Settled purchase. The unique invoice_id enforces one purchase per invoice."""
    __tablename__ = "investor_purchases"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), unique=True)
    investor_id: Mapped[str] = mapped_column(String(64), ForeignKey("profiles.id"))
    tx_hash: Mapped[str] = mapped_column(String(128))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def to_domain(self) -> PurchaseRecord:
        return PurchaseRecord(
            invoice_id=self.invoice_id,
            investor_id=self.investor_id,
            tx_hash=self.tx_hash,
            timestamp=self.timestamp,
        )


class AcknowledgementRow(Base):
    """Audit log of buyer acknowledgements."""
    __tablename__ = "buyer_acknowledgements"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(String(36), ForeignKey("invoices.id"), index=True)
    buyer_id: Mapped[str] = mapped_column(String(64), ForeignKey("profiles.id"))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _row_values(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert domain field values to column values."""
    values = {
        key: value.value if isinstance(value, InvoiceStatus) else value
        for key, value in fields.items()
    }
    values["updated_at"] = _utcnow()
    return values


class SqlInvoiceStore(InvoiceStore):
    """
    InvoiceStore backed by SQLAlchemy.

    Every call opens its own session and transaction. Driver errors are
    wrapped in StoreError so callers never see SQLAlchemy types.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert_invoice(self, invoice: Invoice) -> Invoice:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = InvoiceRow.from_domain(invoice)
                    session.add(row)
                await session.refresh(row)
                return row.to_domain()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to insert invoice {invoice.id}")
            raise StoreError("Could not save invoice", detail=str(e)) from e

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(InvoiceRow, invoice_id)
                return row.to_domain() if row else None
        except SQLAlchemyError as e:
            raise StoreError("Could not load invoice", detail=str(e)) from e

    async def list_invoices(
        self,
        *,
        status: InvoiceStatus | None = None,
        created_by: str | None = None,
        buyer_email: str | None = None,
    ) -> list[Invoice]:
        query = select(InvoiceRow)
        if status is not None:
            query = query.where(InvoiceRow.status == status.value)
        if created_by is not None:
            query = query.where(InvoiceRow.created_by == created_by)
        if buyer_email is not None:
            query = query.where(InvoiceRow.buyer_email == buyer_email)
        query = query.order_by(InvoiceRow.due_date, InvoiceRow.created_at)
        try:
            async with self._session_factory() as session:
                rows = (await session.scalars(query)).all()
                return [row.to_domain() for row in rows]
        except SQLAlchemyError as e:
            raise StoreError("Could not list invoices", detail=str(e)) from e

    async def update(
        self,
        invoice_id: str,
        expected_status: InvoiceStatus,
        fields: dict[str, Any],
        purchase: PurchaseRecord | None = None,
    ) -> UpdateResult:
        check_update_fields(fields)
        statement = (
            update(InvoiceRow)
            .where(InvoiceRow.id == invoice_id, InvoiceRow.status == expected_status.value)
            .values(**_row_values(fields))
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(statement)
                    applied = result.rowcount == 1
                    if applied and purchase is not None:
                        session.add(PurchaseRow(
                            invoice_id=purchase.invoice_id,
                            investor_id=purchase.investor_id,
                            tx_hash=purchase.tx_hash,
                            timestamp=purchase.timestamp,
                        ))
                    current = await session.scalar(
                        select(InvoiceRow.status).where(InvoiceRow.id == invoice_id)
                    )
        except SQLAlchemyError as e:
            logger.error(f"Conditional update failed for invoice {invoice_id}: {e}")
            raise StoreError("Could not update invoice", detail=str(e)) from e

        return UpdateResult(
            applied=applied,
            current_status=InvoiceStatus(current) if current is not None else None,
        )

    async def get_purchase(self, invoice_id: str) -> PurchaseRecord | None:
        try:
            async with self._session_factory() as session:
                row = await session.scalar(
                    select(PurchaseRow).where(PurchaseRow.invoice_id == invoice_id)
                )
                return row.to_domain() if row else None
        except SQLAlchemyError as e:
            raise StoreError("Could not load purchase", detail=str(e)) from e

    async def record_acknowledgement(self, record: AcknowledgementRecord) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(AcknowledgementRow(
                        invoice_id=record.invoice_id,
                        buyer_id=record.buyer_id,
                        timestamp=record.timestamp,
                    ))
        except SQLAlchemyError as e:
            raise StoreError("Could not log acknowledgement", detail=str(e)) from e

    async def get_profile(self, profile_id: str) -> Profile | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(ProfileRow, profile_id)
                return row.to_domain() if row else None
        except SQLAlchemyError as e:
            raise StoreError("Could not load profile", detail=str(e)) from e

    async def insert_profile(self, profile: Profile) -> Profile:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = ProfileRow(
                        id=profile.id,
                        email=profile.email,
                        role=profile.role.value,
                        wallet_address=profile.wallet_address,
                    )
                    session.add(row)
                await session.refresh(row)
                return row.to_domain()
        except SQLIntegrityError as e:
            raise ConflictError("A profile already exists for this identity or email") from e
        except SQLAlchemyError as e:
            raise StoreError("Could not save profile", detail=str(e)) from e

    async def update_profile_wallet(self, profile_id: str, wallet_address: str | None) -> Profile | None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(ProfileRow, profile_id)
                    if row is None:
                        return None
                    row.wallet_address = wallet_address
                return row.to_domain()
        except SQLAlchemyError as e:
            raise StoreError("Could not update profile", detail=str(e)) from e


# Engine and session factory (initialized lazily)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            str(settings.database_url),
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
        )
        # Extract host from MultiHostUrl (Pydantic v2)
        hosts = settings.database_url.hosts()
        host_info = hosts[0]["host"] if hosts else "unknown"
        logger.info(f"Database engine created for {host_info}")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory for creating database sessions."""
    global _session_factory
    if _session_factory is None:
        engine = get_engine()
        _session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Initialize database tables.

    Call this on application startup to ensure tables exist.
    In production, use Alembic migrations instead.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


async def close_db() -> None:
    """Close database connections on shutdown."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
    logger.info("Database connections closed")
