"""
Operator reconciliation endpoints.

Authenticated with the X-API-Key header and executed in the system
context, which can reconcile and roll back but never buy or list.
"""

import logging

from fastapi import APIRouter, Depends

from factora.api.dependencies import get_guard, get_operator_identity
from factora.api.schemas import (
    ErrorResponse,
    InvoiceEnvelope,
    InvoiceListEnvelope,
    InvoiceResponse,
    ReconcileRequest,
    RollbackRequest,
)
from factora.services.identity import Identity
from factora.services.reconciliation import ReconciliationGuard

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.get("/pending", response_model=InvoiceListEnvelope)
async def pending_reconciliation(
    identity: Identity = Depends(get_operator_identity),
    guard: ReconciliationGuard = Depends(get_guard),
) -> InvoiceListEnvelope:
    """Invoices in SoldUnsynced or Settling."""
    invoices = await guard.pending_reconciliation(identity)
    return InvoiceListEnvelope(invoices=[InvoiceResponse.from_domain(i) for i in invoices])


@router.post(
    "/{invoice_id}",
    response_model=InvoiceEnvelope,
    responses={
        400: {"model": ErrorResponse, "description": "No transaction hash to reconcile with"},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Ledger does not report the invoice sold"},
        500: {"model": ErrorResponse, "description": "Recorded with a different transaction"},
        503: {"model": ErrorResponse, "description": "Store still unavailable"},
    },
)
async def reconcile_invoice(
    invoice_id: str,
    request: ReconcileRequest,
    identity: Identity = Depends(get_operator_identity),
    guard: ReconciliationGuard = Depends(get_guard),
) -> InvoiceEnvelope:
    """Commit a ledger-confirmed purchase to the store. Safe to repeat."""
    logger.info(f"Reconciliation requested for {invoice_id}")
    result = await guard.reconcile(identity, invoice_id, request.tx_hash)
    return InvoiceEnvelope(invoice=InvoiceResponse.from_domain(result.invoice), changed=result.changed)


@router.post(
    "/{invoice_id}/rollback",
    response_model=InvoiceEnvelope,
    responses={
        400: {"model": ErrorResponse, "description": "Rollback not confirmed"},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Not Settling, or the ledger reports it sold"},
    },
)
async def rollback_settlement(
    invoice_id: str,
    request: RollbackRequest,
    identity: Identity = Depends(get_operator_identity),
    guard: ReconciliationGuard = Depends(get_guard),
) -> InvoiceEnvelope:
    """Release an abandoned Settling purchase back to Listed."""
    logger.info(f"Operator rollback requested for {invoice_id}")
    result = await guard.rollback(identity, invoice_id, request.confirm_not_broadcast)
    return InvoiceEnvelope(invoice=InvoiceResponse.from_domain(result.invoice), changed=result.changed)
