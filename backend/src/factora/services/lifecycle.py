"""
Invoice lifecycle state machine.

Applies status transitions through the store's conditional write:

    Pending -> Acknowledged -> Listed -> Settling -> Sold
                                            |  ^        ^
                                            |  |        |
                                            v  |   SoldUnsynced
                                        (rollback)

Every public action authorizes first, then checks the current-state
precondition, then issues a single compare-and-set. A write that does not
apply is re-read and either recognized as an idempotent repeat or
reported as a conflict. Nothing is ever written outside the edge set in
factora.domain.transitions.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from factora.domain.errors import ConflictError, IntegrityError, InvalidTransitionError, NotFoundError
from factora.domain.models import (
    AcknowledgementRecord,
    Invoice,
    InvoiceStatus,
    PurchaseRecord,
    Role,
    TransitionResult,
    UpdateResult,
)
from factora.domain.transitions import assert_valid_transition
from factora.domain.validation import parse_money, validate_invoice_draft
from factora.infrastructure.store import InvoiceStore

from .authorization import Action, ActorContext, AuthorizationGate
from .identity import Identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementStart:
    """
    Result of the buy phase-1 lock.

    existing_purchase is set when the caller already owns the invoice; the
    buy is then an idempotent repeat and no ledger step is needed.
    """
    invoice: Invoice
    actor: ActorContext
    existing_purchase: PurchaseRecord | None = None


class LifecycleEngine:
    """Validates and applies invoice status transitions."""

    def __init__(self, store: InvoiceStore, gate: AuthorizationGate | None = None) -> None:
        self.store = store
        self.gate = gate or AuthorizationGate(store)

    async def load(self, invoice_id: str) -> Invoice:
        invoice = await self.store.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found", context={"invoice_id": invoice_id})
        return invoice

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, identity: Identity, invoice_id: str) -> Invoice:
        invoice = await self.load(invoice_id)
        await self.gate.authorize(identity, Action.VIEW, invoice)
        return invoice

    async def list_visible(self, identity: Identity) -> list[Invoice]:
        """
        Invoices relevant to the caller's role.

        MSME: invoices it created. Buyer: invoices addressed to its email.
        Investor: the marketplace (Listed invoices, earliest due first).
        """
        actor = await self.gate.authorize(identity, Action.VIEW)
        profile = actor.profile
        if profile is None:
            return await self.pending_reconciliation(identity)
        if profile.role is Role.MSME:
            return await self.store.list_invoices(created_by=profile.id)
        if profile.role is Role.BUYER:
            return await self.store.list_invoices(buyer_email=profile.email)
        return await self.store.list_invoices(status=InvoiceStatus.LISTED)

    async def pending_reconciliation(self, identity: Identity) -> list[Invoice]:
        """Invoices whose purchase has not settled in the store (operator view)."""
        await self.gate.authorize(identity, Action.RECONCILE)
        unsynced = await self.store.list_invoices(status=InvoiceStatus.SOLD_UNSYNCED)
        settling = await self.store.list_invoices(status=InvoiceStatus.SETTLING)
        return unsynced + settling

    # ------------------------------------------------------------------
    # MSME / buyer transitions
    # ------------------------------------------------------------------

    async def create(self, identity: Identity, payload: dict[str, Any]) -> Invoice:
        actor = await self.gate.authorize(identity, Action.CREATE)
        draft = validate_invoice_draft(payload)

        invoice = Invoice(
            id=str(uuid4()),
            invoice_number=draft.invoice_number,
            amount=draft.amount,
            due_date=draft.due_date,
            buyer_email=draft.buyer_email,
            created_by=actor.actor_id,
            pdf_reference=draft.pdf_reference,
        )
        stored = await self.store.insert_invoice(invoice)
        logger.info(f"Invoice {stored.id} ({stored.invoice_number}) created by {actor.actor_id}")
        return stored

    async def acknowledge(self, identity: Identity, invoice_id: str) -> TransitionResult:
        invoice = await self.load(invoice_id)
        actor = await self.gate.authorize(identity, Action.ACKNOWLEDGE, invoice)

        if invoice.status is InvoiceStatus.ACKNOWLEDGED:
            logger.info(f"Invoice {invoice_id} already acknowledged")
            return TransitionResult(invoice=invoice, changed=False)
        assert_valid_transition(invoice_id, Action.ACKNOWLEDGE.value, invoice.status, InvoiceStatus.ACKNOWLEDGED)

        result = await self.store.update(
            invoice_id,
            InvoiceStatus.PENDING,
            {"buyer_acknowledged": True, "status": InvoiceStatus.ACKNOWLEDGED},
        )
        if not result.applied:
            if result.current_status is InvoiceStatus.ACKNOWLEDGED:
                return TransitionResult(invoice=await self.load(invoice_id), changed=False)
            self._raise_lost_race(invoice_id, Action.ACKNOWLEDGE, result)

        await self.store.record_acknowledgement(AcknowledgementRecord(
            invoice_id=invoice_id,
            buyer_id=actor.actor_id,
            timestamp=datetime.now(timezone.utc),
        ))
        logger.info(f"Invoice {invoice_id} acknowledged by buyer {actor.actor_id}")
        return TransitionResult(invoice=await self.load(invoice_id), changed=True)

    async def list_invoice(self, identity: Identity, invoice_id: str, price: Any) -> TransitionResult:
        """
        List an acknowledged invoice, or re-price one that is still Listed.

        Same price on a Listed invoice is a no-op.
        """
        listed_price = parse_money(price, "listed_price")
        invoice = await self.load(invoice_id)
        await self.gate.authorize(identity, Action.LIST, invoice)

        if invoice.status is InvoiceStatus.LISTED:
            if invoice.listed_price == listed_price:
                logger.info(f"Invoice {invoice_id} already listed at {listed_price}")
                return TransitionResult(invoice=invoice, changed=False)
            result = await self.store.update(invoice_id, InvoiceStatus.LISTED, {"listed_price": listed_price})
            if not result.applied:
                self._raise_lost_race(invoice_id, Action.LIST, result)
            logger.info(f"Invoice {invoice_id} re-priced {invoice.listed_price} -> {listed_price}")
            return TransitionResult(invoice=await self.load(invoice_id), changed=True)

        if invoice.status is InvoiceStatus.PENDING:
            raise InvalidTransitionError(
                invoice_id, Action.LIST.value, invoice.status.value,
                reason="invoice not acknowledged by buyer",
            )
        if invoice.status is not InvoiceStatus.ACKNOWLEDGED:
            raise InvalidTransitionError(invoice_id, Action.LIST.value, invoice.status.value)

        result = await self.store.update(
            invoice_id,
            InvoiceStatus.ACKNOWLEDGED,
            {"status": InvoiceStatus.LISTED, "listed_price": listed_price},
        )
        if not result.applied:
            current = await self.load(invoice_id)
            if current.status is InvoiceStatus.LISTED and current.listed_price == listed_price:
                return TransitionResult(invoice=current, changed=False)
            self._raise_lost_race(invoice_id, Action.LIST, result)

        logger.info(f"Invoice {invoice_id} listed at {listed_price}")
        return TransitionResult(invoice=await self.load(invoice_id), changed=True)

    # ------------------------------------------------------------------
    # Purchase transitions (driven by ReconciliationGuard)
    # ------------------------------------------------------------------

    async def begin_settlement(self, identity: Identity, invoice_id: str) -> SettlementStart:
        """
        Buy phase 1: take the Settling lock with Listed -> Settling.

        Exactly one concurrent caller wins the conditional write.
        """
        invoice = await self.load(invoice_id)
        actor = await self.gate.authorize(identity, Action.BUY, invoice)

        if invoice.status is InvoiceStatus.SOLD:
            purchase = await self.store.get_purchase(invoice_id)
            if purchase is not None and purchase.investor_id == actor.actor_id:
                logger.info(f"Invoice {invoice_id} already sold to {actor.actor_id}")
                return SettlementStart(invoice=invoice, actor=actor, existing_purchase=purchase)
            raise ConflictError("Invoice already sold", context={"invoice_id": invoice_id})

        if invoice.status in (InvoiceStatus.SETTLING, InvoiceStatus.SOLD_UNSYNCED):
            raise ConflictError(
                "A purchase of this invoice is already in progress",
                context={"invoice_id": invoice_id, "status": invoice.status.value},
            )
        assert_valid_transition(invoice_id, Action.BUY.value, invoice.status, InvoiceStatus.SETTLING)

        result = await self.store.update(
            invoice_id,
            InvoiceStatus.LISTED,
            {"status": InvoiceStatus.SETTLING, "settling_investor_id": actor.actor_id},
        )
        if not result.applied:
            self._raise_lost_race(invoice_id, Action.BUY, result)

        logger.info(f"Invoice {invoice_id} settling for investor {actor.actor_id}")
        return SettlementStart(invoice=await self.load(invoice_id), actor=actor)

    async def commit_settlement(
        self,
        actor: ActorContext,
        invoice_id: str,
        tx_hash: str,
        investor_id: str,
    ) -> TransitionResult:
        """
        Buy phase 2: Settling/SoldUnsynced -> Sold with the ledger tx hash.

        The purchase record is appended in the same write. Repeating the
        commit with the same hash is a no-op; a Sold row with another hash
        is an integrity error and is left untouched.
        """
        invoice = await self.load(invoice_id)
        if self._already_committed(invoice, tx_hash):
            return TransitionResult(invoice=invoice, changed=False)
        assert_valid_transition(invoice_id, "settle", invoice.status, InvoiceStatus.SOLD)

        record = PurchaseRecord(
            invoice_id=invoice_id,
            investor_id=investor_id,
            tx_hash=tx_hash,
            timestamp=datetime.now(timezone.utc),
        )
        result = await self.store.update(
            invoice_id,
            invoice.status,
            {"status": InvoiceStatus.SOLD, "blockchain_tx_hash": tx_hash},
            purchase=record,
        )
        if not result.applied:
            current = await self.load(invoice_id)
            if self._already_committed(current, tx_hash):
                return TransitionResult(invoice=current, changed=False)
            self._raise_lost_race(invoice_id, Action.BUY, result)

        logger.info(f"Invoice {invoice_id} sold to {investor_id} (tx {tx_hash}, by {actor.actor_id})")
        return TransitionResult(invoice=await self.load(invoice_id), changed=True)

    async def mark_unsynced(self, invoice_id: str, tx_hash: str) -> UpdateResult:
        """Record that the ledger confirmed a purchase the store has not committed."""
        return await self.store.update(
            invoice_id,
            InvoiceStatus.SETTLING,
            {"status": InvoiceStatus.SOLD_UNSYNCED, "blockchain_tx_hash": tx_hash},
        )

    async def rollback_settlement(self, actor: ActorContext, invoice_id: str) -> TransitionResult:
        """Release the Settling lock: Settling -> Listed."""
        invoice = await self.load(invoice_id)
        if invoice.status is not InvoiceStatus.SETTLING:
            raise InvalidTransitionError(invoice_id, Action.ROLLBACK.value, invoice.status.value)

        result = await self.store.update(
            invoice_id,
            InvoiceStatus.SETTLING,
            {"status": InvoiceStatus.LISTED, "settling_investor_id": None},
        )
        if not result.applied:
            self._raise_lost_race(invoice_id, Action.ROLLBACK, result)

        logger.info(f"Invoice {invoice_id} purchase rolled back to Listed by {actor.actor_id}")
        return TransitionResult(invoice=await self.load(invoice_id), changed=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _already_committed(invoice: Invoice, tx_hash: str) -> bool:
        """True for a Sold row with this hash; raise if it holds a different purchase."""
        if invoice.status in (InvoiceStatus.SOLD, InvoiceStatus.SOLD_UNSYNCED):
            if invoice.blockchain_tx_hash != tx_hash:
                raise IntegrityError(
                    "Invoice is recorded with a different ledger transaction",
                    context={
                        "invoice_id": invoice.id,
                        "recorded_tx_hash": invoice.blockchain_tx_hash,
                        "tx_hash": tx_hash,
                    },
                )
            return invoice.status is InvoiceStatus.SOLD
        return False

    @staticmethod
    def _raise_lost_race(invoice_id: str, action: Action, result: UpdateResult) -> None:
        if result.current_status is None:
            raise NotFoundError("Invoice not found", context={"invoice_id": invoice_id})
        raise ConflictError(
            f"Invoice changed concurrently; now {result.current_status.value}",
            context={"invoice_id": invoice_id, "action": action.value, "status": result.current_status.value},
        )
