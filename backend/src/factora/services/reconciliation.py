"""
Two-phase purchase across the record store and the ledger.

The store and the ledger cannot commit atomically together, so a purchase
runs as:

1. Listed -> Settling in the store (the lock, exactly one winner)
2. purchase on the ledger (may wait on the investor's wallet)
3. Settling -> Sold in the store with the ledger tx hash

Failures between the steps leave the invoice in a recoverable state:
Settling after a ledger failure (retry or roll back), SoldUnsynced after a
store failure following a confirmed ledger purchase (reconcile).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from factora.domain.errors import (
    AuthorizationError,
    ConflictError,
    IntegrityError,
    InvalidTransitionError,
    LedgerError,
    LedgerErrorKind,
    StoreError,
    SyncError,
    ValidationError,
)
from factora.domain.models import Invoice, InvoiceStatus, TransitionResult

from .authorization import Action, ActorContext
from .identity import Identity
from .ledger import LedgerClient, PurchaseOrder
from .lifecycle import LifecycleEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListingResult:
    invoice: Invoice
    changed: bool
    ledger_tx_hash: str | None = None


class ReconciliationGuard:
    """Drives the ledger step of a purchase and recovers from split outcomes."""

    def __init__(
        self,
        engine: LifecycleEngine,
        ledger: LedgerClient,
        confirmation_timeout: float = 300.0,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.confirmation_timeout = confirmation_timeout

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_and_publish(self, identity: Identity, invoice_id: str, price: Any) -> ListingResult:
        """
        Apply the list transition, then publish the listing on the ledger.

        An unchanged listing is republished unless the ledger still has it
        open at the stored price, so a re-price whose publication failed is
        published on the next attempt. A publication failure leaves the
        store Listed.
        """
        result = await self.engine.list_invoice(identity, invoice_id, price)
        invoice = result.invoice

        if not result.changed and await self.ledger.is_listed_at(invoice_id, invoice.listed_price):
            return ListingResult(invoice=invoice, changed=False)

        try:
            tx_hash = await self.ledger.list_invoice(invoice_id, invoice.listed_price)
        except LedgerError as e:
            logger.warning(f"Publishing listing for {invoice_id} failed ({e.kind.value}): {e.message}")
            raise

        logger.info(f"Listing for {invoice_id} published at {invoice.listed_price} (tx {tx_hash})")
        return ListingResult(invoice=invoice, changed=result.changed, ledger_tx_hash=tx_hash)

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    async def prepare_purchase(
        self,
        identity: Identity,
        invoice_id: str,
        buyer_wallet: str | None = None,
    ) -> dict[str, Any]:
        """Unsigned ledger payload for the investor's wallet to sign."""
        invoice = await self.engine.load(invoice_id)
        actor = await self.engine.gate.authorize(identity, Action.BUY, invoice)

        if invoice.status is not InvoiceStatus.LISTED:
            raise InvalidTransitionError(invoice_id, Action.BUY.value, invoice.status.value)

        wallet = buyer_wallet or (actor.profile.wallet_address if actor.profile else None)
        if not wallet:
            raise ValidationError("A wallet address is required to prepare a purchase")

        return await self.ledger.prepare_purchase(invoice_id, invoice.listed_price, wallet)

    async def buy(
        self,
        identity: Identity,
        invoice_id: str,
        signed_transaction: str | None = None,
        buyer_wallet: str | None = None,
    ) -> TransitionResult:
        """
        Purchase a listed invoice.

        Raises:
            ConflictError: another purchase holds or completed the lock
            LedgerError: the ledger step failed; the invoice stays Settling
            SyncError: ledger confirmed but the store commit failed
        """
        start = await self.engine.begin_settlement(identity, invoice_id)
        if start.existing_purchase is not None:
            return TransitionResult(invoice=start.invoice, changed=False)

        return await self._settle(start.actor, start.invoice, signed_transaction, buyer_wallet)

    async def retry_purchase(
        self,
        identity: Identity,
        invoice_id: str,
        signed_transaction: str | None = None,
        buyer_wallet: str | None = None,
    ) -> TransitionResult:
        """Re-attempt the ledger step for the caller's own Settling purchase."""
        invoice = await self.engine.load(invoice_id)
        actor = await self.engine.gate.authorize(identity, Action.BUY, invoice)

        if invoice.status is InvoiceStatus.SOLD and invoice.settling_investor_id == actor.actor_id:
            return TransitionResult(invoice=invoice, changed=False)
        if invoice.status is InvoiceStatus.SOLD_UNSYNCED:
            raise SyncError(invoice_id, invoice.blockchain_tx_hash or "")
        if invoice.status is not InvoiceStatus.SETTLING:
            raise InvalidTransitionError(invoice_id, "retry", invoice.status.value)
        if invoice.settling_investor_id != actor.actor_id:
            raise AuthorizationError("Only the investor holding the purchase can retry it")

        logger.info(f"Retrying ledger purchase of {invoice_id} for {actor.actor_id}")
        return await self._settle(actor, invoice, signed_transaction, buyer_wallet)

    async def rollback(self, identity: Identity, invoice_id: str, confirm_not_broadcast: bool) -> TransitionResult:
        """
        Return a Settling invoice to Listed.

        Allowed only when the caller confirms nothing was broadcast and the
        ledger does not report the invoice sold.
        """
        invoice = await self.engine.load(invoice_id)
        actor = await self.engine.gate.authorize(identity, Action.ROLLBACK, invoice)

        if not confirm_not_broadcast:
            raise ValidationError("Rollback requires confirmation that no purchase was broadcast")
        if invoice.status is not InvoiceStatus.SETTLING:
            raise InvalidTransitionError(invoice_id, Action.ROLLBACK.value, invoice.status.value)

        on_chain = await self.ledger.get_invoice(invoice_id)
        if on_chain is not None and on_chain.is_sold:
            raise ConflictError(
                "Ledger reports the invoice sold; reconcile instead of rolling back",
                context={"invoice_id": invoice_id, "buyer": on_chain.buyer},
            )

        return await self.engine.rollback_settlement(actor, invoice_id)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, identity: Identity, invoice_id: str, tx_hash: str | None = None) -> TransitionResult:
        """
        Re-apply the store commit for a purchase the ledger confirmed.

        Applies from Settling or SoldUnsynced. A Sold invoice with the same
        hash is a no-op; with a different hash it is an integrity error.
        """
        invoice = await self.engine.load(invoice_id)
        actor = await self.engine.gate.authorize(identity, Action.RECONCILE, invoice)

        if invoice.status is InvoiceStatus.SOLD:
            if tx_hash and tx_hash != invoice.blockchain_tx_hash:
                raise IntegrityError(
                    "Invoice is recorded with a different ledger transaction",
                    context={
                        "invoice_id": invoice_id,
                        "recorded_tx_hash": invoice.blockchain_tx_hash,
                        "tx_hash": tx_hash,
                    },
                )
            logger.info(f"Invoice {invoice_id} already reconciled")
            return TransitionResult(invoice=invoice, changed=False)

        if invoice.status not in (InvoiceStatus.SETTLING, InvoiceStatus.SOLD_UNSYNCED):
            raise InvalidTransitionError(invoice_id, Action.RECONCILE.value, invoice.status.value)

        resolved_hash = tx_hash or invoice.blockchain_tx_hash
        if not resolved_hash:
            raise ValidationError("tx_hash is required to reconcile a Settling invoice")
        if invoice.settling_investor_id is None:
            raise IntegrityError(
                "Invoice has no purchasing investor recorded",
                context={"invoice_id": invoice_id},
            )

        on_chain = await self.ledger.get_invoice(invoice_id)
        if on_chain is None or not on_chain.is_sold:
            raise ConflictError(
                "Ledger does not report the invoice sold",
                context={"invoice_id": invoice_id, "tx_hash": resolved_hash},
            )

        return await self._commit(actor, invoice_id, resolved_hash, invoice.settling_investor_id)

    async def pending_reconciliation(self, identity: Identity) -> list[Invoice]:
        return await self.engine.pending_reconciliation(identity)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _settle(
        self,
        actor: ActorContext,
        invoice: Invoice,
        signed_transaction: str | None,
        buyer_wallet: str | None,
    ) -> TransitionResult:
        order = PurchaseOrder(
            invoice_id=invoice.id,
            price=invoice.listed_price,
            buyer_wallet=buyer_wallet or (actor.profile.wallet_address if actor.profile else None),
            signed_transaction=signed_transaction,
        )

        try:
            receipt = await asyncio.wait_for(
                self.ledger.purchase_invoice(order),
                timeout=self.confirmation_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Ledger confirmation for {invoice.id} timed out after {self.confirmation_timeout}s")
            raise LedgerError(
                LedgerErrorKind.UNKNOWN,
                "Timed out waiting for ledger confirmation",
                detail="Invoice remains Settling; retry the purchase or roll it back",
                context={"invoice_id": invoice.id},
            )
        except LedgerError as e:
            logger.warning(f"Ledger purchase of {invoice.id} failed ({e.kind.value}): {e.message}")
            raise

        logger.info(f"Ledger confirmed purchase of {invoice.id} (tx {receipt.tx_hash})")
        return await self._commit(actor, invoice.id, receipt.tx_hash, actor.actor_id)

    async def _commit(
        self,
        actor: ActorContext,
        invoice_id: str,
        tx_hash: str,
        investor_id: str,
    ) -> TransitionResult:
        try:
            return await self.engine.commit_settlement(actor, invoice_id, tx_hash, investor_id)
        except StoreError as e:
            logger.error(
                f"Ledger confirmed purchase of {invoice_id} (tx {tx_hash}) "
                f"but the store commit failed: {e.message}"
            )
            await self._flag_unsynced(invoice_id, tx_hash)
            raise SyncError(invoice_id, tx_hash, detail=e.message) from e

    async def _flag_unsynced(self, invoice_id: str, tx_hash: str) -> None:
        """Best effort Settling -> SoldUnsynced; the SyncError is raised either way."""
        try:
            result = await self.engine.mark_unsynced(invoice_id, tx_hash)
        except StoreError as e:
            logger.error(f"Could not flag {invoice_id} as SoldUnsynced: {e.message}")
            return

        if result.applied:
            logger.info(f"Invoice {invoice_id} flagged SoldUnsynced (tx {tx_hash})")
        else:
            logger.warning(f"Invoice {invoice_id} not flagged SoldUnsynced; status is {result.current_status}")
