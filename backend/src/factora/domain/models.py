"""
Domain models for the invoice financing lifecycle.

These models represent the records shared between the lifecycle engine,
the record store and the ledger client. They carry no I/O.

Design Decisions:
- Frozen dataclasses; every mutation produces a new value via the store
- Decimal for all monetary values to avoid floating-point errors
- Status and role are closed enums, never free-form strings
- Record invariants are checked in __post_init__ so an invalid row
  cannot be constructed, whichever layer builds it
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum


class InvoiceStatus(str, Enum):
    """Lifecycle status of an invoice."""
    PENDING = "Pending"
    ACKNOWLEDGED = "Acknowledged"
    LISTED = "Listed"
    SETTLING = "Settling"
    SOLD = "Sold"
    SOLD_UNSYNCED = "SoldUnsynced"


class Role(str, Enum):
    """Profile roles. Always read from the stored profile."""
    MSME = "msme"
    BUYER = "buyer"
    INVESTOR = "investor"


# Statuses in which an invoice carries a listing price
PRICED_STATUSES = frozenset({
    InvoiceStatus.LISTED,
    InvoiceStatus.SETTLING,
    InvoiceStatus.SOLD,
    InvoiceStatus.SOLD_UNSYNCED,
})

# Statuses that only exist after a ledger purchase receipt
LEDGER_CONFIRMED_STATUSES = frozenset({
    InvoiceStatus.SOLD,
    InvoiceStatus.SOLD_UNSYNCED,
})


def normalize_email(email: str) -> str:
    """Canonical form used for buyer matching."""
    return email.strip().lower()


@dataclass(frozen=True)
class Invoice:
    """
    An invoice as held in the record store.

    The status field is the only lifecycle cursor; everything else is
    either immutable after create or written together with a status change.
    """
    id: str
    invoice_number: str
    amount: Decimal
    due_date: date
    buyer_email: str
    created_by: str
    status: InvoiceStatus = InvoiceStatus.PENDING
    buyer_acknowledged: bool = False
    listed_price: Decimal | None = None
    pdf_reference: str | None = None
    blockchain_tx_hash: str | None = None
    settling_investor_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate record invariants."""
        if self.amount <= 0:
            raise ValueError(f"Invoice amount must be positive, got {self.amount}")
        if self.status in PRICED_STATUSES:
            if self.listed_price is None or self.listed_price <= 0:
                raise ValueError(f"Invoice in status {self.status.value} requires a positive listed_price")
        elif self.listed_price is not None:
            raise ValueError(f"Invoice in status {self.status.value} cannot carry a listed_price")
        if self.status is not InvoiceStatus.PENDING and not self.buyer_acknowledged:
            raise ValueError(f"Invoice in status {self.status.value} must be buyer-acknowledged")
        if self.status in LEDGER_CONFIRMED_STATUSES and not self.blockchain_tx_hash:
            raise ValueError(f"Invoice in status {self.status.value} requires a transaction hash")

    @property
    def is_listed_or_later(self) -> bool:
        return self.status in PRICED_STATUSES


@dataclass(frozen=True)
class Profile:
    """Authoritative identity record. Role is never taken from the caller."""
    id: str
    email: str
    role: Role
    wallet_address: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class PurchaseRecord:
    """Append-only record of a settled purchase. At most one per invoice."""
    invoice_id: str
    investor_id: str
    tx_hash: str
    timestamp: datetime


@dataclass(frozen=True)
class AcknowledgementRecord:
    """Audit entry written when a buyer acknowledges an invoice."""
    invoice_id: str
    buyer_id: str
    timestamp: datetime


@dataclass(frozen=True)
class UpdateResult:
    """
    Outcome of a conditional store write.

    applied=False means the expected status did not hold; current_status
    then tells the caller what it raced against (None if the row is gone).
    """
    applied: bool
    current_status: InvoiceStatus | None


@dataclass(frozen=True)
class TransitionResult:
    """Invoice after a lifecycle action, and whether the action mutated it."""
    invoice: Invoice
    changed: bool
