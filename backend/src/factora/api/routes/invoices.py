"""
Invoice lifecycle endpoints.

One endpoint per action. Each verifies the identity token, validates the
payload shape, and hands over to the lifecycle engine or the
reconciliation guard, which re-derive role and ownership from the store.
"""

import logging

from fastapi import APIRouter, Depends, status

from factora.api.dependencies import get_guard, get_identity, get_lifecycle
from factora.api.schemas import (
    BuyInvoiceRequest,
    CreateInvoiceRequest,
    ErrorResponse,
    InvoiceEnvelope,
    InvoiceListEnvelope,
    InvoiceResponse,
    ListingEnvelope,
    ListInvoiceRequest,
    PreparePurchaseRequest,
    PurchasePayloadEnvelope,
    RollbackRequest,
)
from factora.domain.models import TransitionResult
from factora.services.identity import Identity
from factora.services.lifecycle import LifecycleEngine
from factora.services.reconciliation import ReconciliationGuard

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])

ACTION_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid payload"},
    401: {"model": ErrorResponse, "description": "Missing or invalid identity token"},
    403: {"model": ErrorResponse, "description": "Role or ownership mismatch"},
    404: {"model": ErrorResponse, "description": "Invoice not found"},
    409: {"model": ErrorResponse, "description": "Invalid transition or concurrent change"},
}

PURCHASE_ERRORS = {
    **ACTION_ERRORS,
    402: {"model": ErrorResponse, "description": "Insufficient funds"},
    502: {"model": ErrorResponse, "description": "Ledger failure; invoice stays Settling"},
    503: {"model": ErrorResponse, "description": "Ledger confirmed, store commit pending"},
}


def _envelope(result: TransitionResult) -> InvoiceEnvelope:
    return InvoiceEnvelope(invoice=InvoiceResponse.from_domain(result.invoice), changed=result.changed)


@router.post(
    "",
    response_model=InvoiceEnvelope,
    status_code=status.HTTP_201_CREATED,
    responses=ACTION_ERRORS,
)
async def create_invoice(
    request: CreateInvoiceRequest,
    identity: Identity = Depends(get_identity),
    engine: LifecycleEngine = Depends(get_lifecycle),
) -> InvoiceEnvelope:
    """Create a Pending invoice owned by the calling MSME."""
    invoice = await engine.create(identity, request.model_dump())
    return InvoiceEnvelope(invoice=InvoiceResponse.from_domain(invoice))


@router.get("", response_model=InvoiceListEnvelope)
async def list_my_invoices(
    identity: Identity = Depends(get_identity),
    engine: LifecycleEngine = Depends(get_lifecycle),
) -> InvoiceListEnvelope:
    """
    Invoices for the caller's role.

    MSMEs see what they created, buyers see what is addressed to them,
    investors see the marketplace.
    """
    invoices = await engine.list_visible(identity)
    return InvoiceListEnvelope(invoices=[InvoiceResponse.from_domain(i) for i in invoices])


@router.get("/{invoice_id}", response_model=InvoiceEnvelope, responses=ACTION_ERRORS)
async def get_invoice(
    invoice_id: str,
    identity: Identity = Depends(get_identity),
    engine: LifecycleEngine = Depends(get_lifecycle),
) -> InvoiceEnvelope:
    invoice = await engine.get(identity, invoice_id)
    return InvoiceEnvelope(invoice=InvoiceResponse.from_domain(invoice), changed=False)


@router.post("/{invoice_id}/acknowledge", response_model=InvoiceEnvelope, responses=ACTION_ERRORS)
async def acknowledge_invoice(
    invoice_id: str,
    identity: Identity = Depends(get_identity),
    engine: LifecycleEngine = Depends(get_lifecycle),
) -> InvoiceEnvelope:
    """Buyer confirms the invoice. Repeating it succeeds without changes."""
    return _envelope(await engine.acknowledge(identity, invoice_id))


@router.post("/{invoice_id}/list", response_model=ListingEnvelope, responses=PURCHASE_ERRORS)
async def list_invoice(
    invoice_id: str,
    request: ListInvoiceRequest,
    identity: Identity = Depends(get_identity),
    guard: ReconciliationGuard = Depends(get_guard),
) -> ListingEnvelope:
    """List an acknowledged invoice at a price and publish it on the ledger."""
    result = await guard.list_and_publish(identity, invoice_id, request.price)
    return ListingEnvelope(
        invoice=InvoiceResponse.from_domain(result.invoice),
        changed=result.changed,
        ledger_tx_hash=result.ledger_tx_hash,
    )


@router.post(
    "/{invoice_id}/purchase/prepare",
    response_model=PurchasePayloadEnvelope,
    responses=ACTION_ERRORS,
)
async def prepare_purchase(
    invoice_id: str,
    request: PreparePurchaseRequest,
    identity: Identity = Depends(get_identity),
    guard: ReconciliationGuard = Depends(get_guard),
) -> PurchasePayloadEnvelope:
    """
    Prepare the purchase transaction for client signing.

    **Note:** This endpoint does not submit anything. The investor signs
    the payload in their wallet and posts the blob to ``/buy``.
    """
    payload = await guard.prepare_purchase(identity, invoice_id, request.wallet_address)
    return PurchasePayloadEnvelope(transaction=payload)


@router.post("/{invoice_id}/buy", response_model=InvoiceEnvelope, responses=PURCHASE_ERRORS)
async def buy_invoice(
    invoice_id: str,
    request: BuyInvoiceRequest,
    identity: Identity = Depends(get_identity),
    guard: ReconciliationGuard = Depends(get_guard),
) -> InvoiceEnvelope:
    """
    Purchase a listed invoice.

    Exactly one concurrent buyer wins; the others receive 409. A repeat by
    the investor who already bought succeeds without changes.
    """
    logger.info(f"Buy request for {invoice_id} from {identity.subject}")
    result = await guard.buy(identity, invoice_id, request.signed_transaction, request.wallet_address)
    return _envelope(result)


@router.post("/{invoice_id}/buy/retry", response_model=InvoiceEnvelope, responses=PURCHASE_ERRORS)
async def retry_purchase(
    invoice_id: str,
    request: BuyInvoiceRequest,
    identity: Identity = Depends(get_identity),
    guard: ReconciliationGuard = Depends(get_guard),
) -> InvoiceEnvelope:
    """Re-attempt the ledger step of the caller's Settling purchase."""
    result = await guard.retry_purchase(identity, invoice_id, request.signed_transaction, request.wallet_address)
    return _envelope(result)


@router.post("/{invoice_id}/buy/rollback", response_model=InvoiceEnvelope, responses=ACTION_ERRORS)
async def rollback_purchase(
    invoice_id: str,
    request: RollbackRequest,
    identity: Identity = Depends(get_identity),
    guard: ReconciliationGuard = Depends(get_guard),
) -> InvoiceEnvelope:
    """Return the caller's Settling purchase to Listed when nothing was broadcast."""
    return _envelope(await guard.rollback(identity, invoice_id, request.confirm_not_broadcast))
