"""Invoice status edge set and transition checks."""

from .errors import InvalidTransitionError
from .models import InvoiceStatus


VALID_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.ACKNOWLEDGED}),
    InvoiceStatus.ACKNOWLEDGED: frozenset({InvoiceStatus.LISTED}),
    InvoiceStatus.LISTED: frozenset({InvoiceStatus.SETTLING}),
    # Settling -> Listed is the explicit rollback when nothing was broadcast
    InvoiceStatus.SETTLING: frozenset({
        InvoiceStatus.SOLD,
        InvoiceStatus.SOLD_UNSYNCED,
        InvoiceStatus.LISTED,
    }),
    InvoiceStatus.SOLD_UNSYNCED: frozenset({InvoiceStatus.SOLD}),
    InvoiceStatus.SOLD: frozenset(),
}


def can_transition(from_status: InvoiceStatus, to_status: InvoiceStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


def assert_valid_transition(
    invoice_id: str,
    action: str,
    from_status: InvoiceStatus,
    to_status: InvoiceStatus,
) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(
            invoice_id,
            action,
            from_status.value,
            reason=f"{from_status.value} -> {to_status.value} is not an allowed transition",
        )
