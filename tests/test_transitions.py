"""Tests for the invoice status edge set and record invariants."""

from datetime import date
from decimal import Decimal

import pytest

from factora.domain.errors import ConflictError, InvalidTransitionError
from factora.domain.models import Invoice, InvoiceStatus
from factora.domain.transitions import VALID_TRANSITIONS, assert_valid_transition, can_transition


def _invoice(**overrides) -> Invoice:
    fields = dict(
        id="inv-1",
        invoice_number="INV-1",
        amount=Decimal("10000.00"),
        due_date=date(2030, 1, 31),
        buyer_email="ap@buyer.example",
        created_by="msme-1",
    )
    fields.update(overrides)
    return Invoice(**fields)


class TestEdgeSet:

    def test_forward_path(self):
        path = [
            InvoiceStatus.PENDING,
            InvoiceStatus.ACKNOWLEDGED,
            InvoiceStatus.LISTED,
            InvoiceStatus.SETTLING,
            InvoiceStatus.SOLD,
        ]
        for current, following in zip(path, path[1:]):
            assert can_transition(current, following)

    def test_recovery_edges(self):
        assert can_transition(InvoiceStatus.SETTLING, InvoiceStatus.SOLD_UNSYNCED)
        assert can_transition(InvoiceStatus.SETTLING, InvoiceStatus.LISTED)
        assert can_transition(InvoiceStatus.SOLD_UNSYNCED, InvoiceStatus.SOLD)

    def test_sold_is_terminal(self):
        assert VALID_TRANSITIONS[InvoiceStatus.SOLD] == frozenset()

    def test_sold_unsynced_only_from_settling(self):
        sources = {s for s, targets in VALID_TRANSITIONS.items() if InvoiceStatus.SOLD_UNSYNCED in targets}
        assert sources == {InvoiceStatus.SETTLING}

    def test_sold_never_reachable_without_settling(self):
        sources = {s for s, targets in VALID_TRANSITIONS.items() if InvoiceStatus.SOLD in targets}
        assert sources == {InvoiceStatus.SETTLING, InvoiceStatus.SOLD_UNSYNCED}

    @pytest.mark.parametrize("current,target", [
        (InvoiceStatus.PENDING, InvoiceStatus.LISTED),
        (InvoiceStatus.ACKNOWLEDGED, InvoiceStatus.SETTLING),
        (InvoiceStatus.LISTED, InvoiceStatus.SOLD),
        (InvoiceStatus.SOLD, InvoiceStatus.LISTED),
        (InvoiceStatus.LISTED, InvoiceStatus.ACKNOWLEDGED),
    ])
    def test_skips_and_reversals_rejected(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionError) as exc_info:
            assert_valid_transition("inv-1", "test", current, target)
        assert isinstance(exc_info.value, ConflictError)
        assert exc_info.value.status_code == 409
        assert exc_info.value.context["status"] == current.value


class TestInvoiceInvariants:

    def test_new_invoice_defaults(self):
        invoice = _invoice()
        assert invoice.status is InvoiceStatus.PENDING
        assert invoice.buyer_acknowledged is False
        assert invoice.listed_price is None
        assert not invoice.is_listed_or_later

    def test_amount_must_be_positive(self):
        with pytest.raises(ValueError):
            _invoice(amount=Decimal("0"))

    def test_listed_requires_price(self):
        with pytest.raises(ValueError):
            _invoice(status=InvoiceStatus.LISTED, buyer_acknowledged=True)

    def test_pending_cannot_carry_price(self):
        with pytest.raises(ValueError):
            _invoice(listed_price=Decimal("9000"))

    def test_listed_requires_acknowledgement(self):
        with pytest.raises(ValueError):
            _invoice(status=InvoiceStatus.LISTED, listed_price=Decimal("9000"))

    def test_sold_requires_tx_hash(self):
        with pytest.raises(ValueError):
            _invoice(status=InvoiceStatus.SOLD, buyer_acknowledged=True, listed_price=Decimal("9000"))

    def test_sold_with_hash(self):
        invoice = _invoice(
            status=InvoiceStatus.SOLD,
            buyer_acknowledged=True,
            listed_price=Decimal("9000"),
            blockchain_tx_hash="0xabc",
        )
        assert invoice.is_listed_or_later
