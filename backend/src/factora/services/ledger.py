"""
Ledger client interface for the invoice marketplace.

The lifecycle core depends only on this surface:

- list_invoice(invoice_id, price)        publish a listing on-chain
- purchase_invoice(order)                value-bearing purchase, returns a receipt
- get_invoice(invoice_id)                on-chain view of the listing
- is_invoice_available(invoice_id)       listed and not yet sold
- is_listed_at(invoice_id, price)        open listing at that exact price
- prepare_purchase(...)                  unsigned payload for the investor wallet

Concrete clients raise LedgerError with a LedgerErrorKind; raw wallet or
node messages are mapped through classify_ledger_failure.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from factora.domain.errors import LedgerErrorKind


@dataclass(frozen=True)
class PurchaseOrder:
    """
    Everything the ledger needs to execute a purchase.

    signed_transaction is the investor wallet's signed payload; it is
    opaque to the core and interpreted only by the concrete client.
    """
    invoice_id: str
    price: Decimal
    buyer_wallet: str | None = None
    signed_transaction: str | None = None


@dataclass(frozen=True)
class LedgerReceipt:
    """Confirmed on-chain purchase (the InvoicePurchased event)."""
    invoice_id: str
    tx_hash: str
    buyer: str | None
    price: Decimal
    timestamp: datetime


@dataclass(frozen=True)
class OnChainInvoice:
    """On-chain view of an invoice listing."""
    invoice_id: str
    owner: str
    price: Decimal | None
    is_sold: bool
    buyer: str | None = None
    purchase_time: datetime | None = None


class LedgerClient(ABC):
    """Abstract interface for the marketplace contract."""

    @abstractmethod
    async def list_invoice(self, invoice_id: str, price: Decimal) -> str:
        """
        Publish (or re-price) a listing.

        Returns:
            Transaction hash of the listing transaction

        Raises:
            LedgerError: if the listing cannot be published
        """
        pass

    @abstractmethod
    async def purchase_invoice(self, order: PurchaseOrder) -> LedgerReceipt:
        """
        Execute a purchase and wait for it to be confirmed.

        May block for a human-timescale wallet confirmation; callers may
        cancel the wait.

        Raises:
            LedgerError: classified failure, nothing confirmed on-chain
        """
        pass

    @abstractmethod
    async def get_invoice(self, invoice_id: str) -> OnChainInvoice | None:
        """Return the on-chain listing, or None if it was never published."""
        pass

    @abstractmethod
    async def is_invoice_available(self, invoice_id: str) -> bool:
        pass

    async def is_listed_at(self, invoice_id: str, price: Decimal) -> bool:
        """True when the listing is open on-chain at exactly this price."""
        listing = await self.get_invoice(invoice_id)
        return listing is not None and not listing.is_sold and listing.price == price

    @abstractmethod
    async def prepare_purchase(
        self,
        invoice_id: str,
        price: Decimal,
        buyer_wallet: str,
    ) -> dict[str, Any]:
        """Build the unsigned purchase transaction for client-side signing."""
        pass


# EIP-1193 user rejection code, also reported by most wallet bridges
USER_REJECTED_CODE = 4001

_FAILURE_PATTERNS: list[tuple[LedgerErrorKind, re.Pattern[str]]] = [
    (LedgerErrorKind.USER_REJECTED, re.compile(
        r"user (rejected|denied|declined|cancel+ed)|rejected by user|request rejected",
        re.IGNORECASE,
    )),
    (LedgerErrorKind.INSUFFICIENT_FUNDS, re.compile(
        r"insufficient funds|tecUNFUNDED\w*|tecINSUFFICIENT_FUNDS|tecINSUFF_FEE|tecINSUFFICIENT_RESERVE",
        re.IGNORECASE,
    )),
    (LedgerErrorKind.ALREADY_SOLD_ON_CHAIN, re.compile(
        r"already sold|not available|tecOBJECT_NOT_FOUND|tecNO_ENTRY|tecNFTOKEN_OFFER_TYPE_MISMATCH",
        re.IGNORECASE,
    )),
]


def classify_ledger_failure(message: str, code: int | str | None = None) -> LedgerErrorKind:
    """
    Map a wallet or node failure to a LedgerErrorKind.

    Args:
        message: Error text from the wallet, node or submission helper
        code: Optional numeric/string code (e.g. 4001 for user rejection)

    Returns:
        The first matching kind, UNKNOWN if nothing matches
    """
    if code is not None and str(code) == str(USER_REJECTED_CODE):
        return LedgerErrorKind.USER_REJECTED
    for kind, pattern in _FAILURE_PATTERNS:
        if pattern.search(message or ""):
            return kind
    return LedgerErrorKind.UNKNOWN
