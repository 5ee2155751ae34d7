"""
Pydantic schemas for API request/response validation.

These schemas define the contract between frontend and backend.
All monetary values are serialized as strings to avoid floating point issues.
Successful responses carry ``success: true``; errors are rendered by the
exception handlers in factora.main as ``{"error": ..., "code": ...}``.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from factora.domain.models import Invoice, Profile


# =============================================================================
# Request Schemas
# =============================================================================

class RegisterProfileRequest(BaseModel):
    """Register the authenticated identity with a role."""
    role: str = Field(..., description="One of: msme, buyer, investor")
    wallet_address: str | None = Field(
        default=None,
        description="XRPL classic address used for purchases",
        pattern=r"^r[a-zA-Z0-9]{24,34}$",
    )


class UpdateProfileRequest(BaseModel):
    """Profile edit. Only the wallet address can change; null clears it."""
    model_config = ConfigDict(extra="forbid")

    wallet_address: str | None = Field(
        ...,
        description="XRPL classic address used for purchases",
        pattern=r"^r[a-zA-Z0-9]{24,34}$",
    )


class CreateInvoiceRequest(BaseModel):
    """
    New invoice payload.

    Fields are loosely typed here; the lifecycle engine applies the
    business validation rules and reports them with field context.
    """
    invoice_number: Any = None
    amount: Any = None
    due_date: Any = None
    buyer_email: Any = None
    pdf_reference: str | None = Field(
        default=None,
        description="Opaque handle of the stored invoice document",
    )


class ListInvoiceRequest(BaseModel):
    """List an acknowledged invoice, or re-price a listed one."""
    price: Any = Field(..., description="Listing price in USD, greater than zero")


class PreparePurchaseRequest(BaseModel):
    wallet_address: str | None = Field(
        default=None,
        description="Investor wallet; defaults to the profile wallet",
    )


class BuyInvoiceRequest(BaseModel):
    """Purchase submission with the wallet-signed ledger transaction."""
    signed_transaction: str | None = Field(
        default=None,
        description="Hex blob of the investor-signed purchase transaction",
    )
    wallet_address: str | None = None


class RollbackRequest(BaseModel):
    confirm_not_broadcast: bool = Field(
        default=False,
        description="Caller confirms the purchase was never broadcast to the ledger",
    )


class ReconcileRequest(BaseModel):
    tx_hash: str | None = Field(
        default=None,
        description="Ledger transaction hash; defaults to the hash retained on the invoice",
    )


# =============================================================================
# Response Schemas
# =============================================================================

class ProfileResponse(BaseModel):
    id: str
    email: str
    role: str
    wallet_address: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, profile: Profile) -> "ProfileResponse":
        return cls(
            id=profile.id,
            email=profile.email,
            role=profile.role.value,
            wallet_address=profile.wallet_address,
            created_at=profile.created_at,
        )


class InvoiceResponse(BaseModel):
    """Invoice as seen by API clients."""
    id: str
    invoice_number: str
    amount: Decimal
    due_date: date
    buyer_email: str
    status: str
    buyer_acknowledged: bool
    listed_price: Decimal | None = None
    created_by: str
    pdf_reference: str | None = None
    blockchain_tx_hash: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_serializer("amount", "listed_price")
    def serialize_money(self, value: Decimal | None) -> str | None:
        return str(value) if value is not None else None

    @classmethod
    def from_domain(cls, invoice: Invoice) -> "InvoiceResponse":
        return cls(
            id=invoice.id,
            invoice_number=invoice.invoice_number,
            amount=invoice.amount,
            due_date=invoice.due_date,
            buyer_email=invoice.buyer_email,
            status=invoice.status.value,
            buyer_acknowledged=invoice.buyer_acknowledged,
            listed_price=invoice.listed_price,
            created_by=invoice.created_by,
            pdf_reference=invoice.pdf_reference,
            blockchain_tx_hash=invoice.blockchain_tx_hash,
            created_at=invoice.created_at,
            updated_at=invoice.updated_at,
        )


class ProfileEnvelope(BaseModel):
    success: bool = True
    profile: ProfileResponse


class InvoiceEnvelope(BaseModel):
    """Single invoice result; changed is False for idempotent repeats."""
    success: bool = True
    invoice: InvoiceResponse
    changed: bool = True


class ListingEnvelope(InvoiceEnvelope):
    ledger_tx_hash: str | None = None


class InvoiceListEnvelope(BaseModel):
    success: bool = True
    invoices: list[InvoiceResponse]


class PurchasePayloadEnvelope(BaseModel):
    """Unsigned ledger transaction for the investor wallet to sign."""
    success: bool = True
    transaction: dict[str, Any]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    version: str
    database: str = "connected"
    xrpl_network: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    code: str | None = None
    detail: str | None = None
    context: dict[str, Any] | None = None
