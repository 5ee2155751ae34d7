"""
Record store interface for invoices and profiles.

The lifecycle engine talks to the store only through this interface.
The single concurrency-control primitive is ``update``: a conditional
write that applies only if the row still has the expected status.

Design Decisions:
- Abstract interface so the engine runs against SQL in production and
  an in-memory store in tests
- Compare-and-set on status instead of row locks; no external locking
- A purchase record can be appended in the same transaction as the
  status write that settles the invoice
"""

from abc import ABC, abstractmethod
from typing import Any

from factora.domain.models import (
    AcknowledgementRecord,
    Invoice,
    InvoiceStatus,
    Profile,
    PurchaseRecord,
    UpdateResult,
)


# Invoice fields a conditional update may write
UPDATABLE_FIELDS = frozenset({
    "status",
    "buyer_acknowledged",
    "listed_price",
    "blockchain_tx_hash",
    "settling_investor_id",
})


def check_update_fields(fields: dict[str, Any]) -> None:
    """Reject writes to fields that are fixed at create time."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")


class InvoiceStore(ABC):
    """Abstract interface for the relational record store."""

    @abstractmethod
    async def insert_invoice(self, invoice: Invoice) -> Invoice:
        """Insert a new invoice row and return it as stored."""
        pass

    @abstractmethod
    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        pass

    @abstractmethod
    async def list_invoices(
        self,
        *,
        status: InvoiceStatus | None = None,
        created_by: str | None = None,
        buyer_email: str | None = None,
    ) -> list[Invoice]:
        """List invoices matching all given filters, ordered by due date."""
        pass

    @abstractmethod
    async def update(
        self,
        invoice_id: str,
        expected_status: InvoiceStatus,
        fields: dict[str, Any],
        purchase: PurchaseRecord | None = None,
    ) -> UpdateResult:
        """
        Conditionally update an invoice.

        Applies ``fields`` only if the row's status equals ``expected_status``.
        When ``purchase`` is given it is appended in the same transaction and
        only if the update applied.

        Returns:
            UpdateResult with applied flag and the status after the attempt
            (None if the invoice does not exist)

        Raises:
            StoreError: if the store cannot complete the operation
        """
        pass

    @abstractmethod
    async def get_purchase(self, invoice_id: str) -> PurchaseRecord | None:
        pass

    @abstractmethod
    async def record_acknowledgement(self, record: AcknowledgementRecord) -> None:
        pass

    @abstractmethod
    async def get_profile(self, profile_id: str) -> Profile | None:
        pass

    @abstractmethod
    async def insert_profile(self, profile: Profile) -> Profile:
        """
        Insert a profile.

        Raises:
            ConflictError: if a profile with the same id or email exists
        """
        pass

    @abstractmethod
    async def update_profile_wallet(self, profile_id: str, wallet_address: str | None) -> Profile | None:
        """
        Replace a profile's wallet address. Role and email are never updatable.

        Returns:
            The updated profile, or None if no profile exists
        """
        pass
