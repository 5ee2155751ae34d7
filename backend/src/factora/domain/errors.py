"""
Error taxonomy for invoice lifecycle operations.

Every error carries a machine-readable code, a human message, the HTTP
status the API layer renders it with, and optional context. Errors are
raised by the domain and service layers and converted to JSON bodies of
the form ``{"error": message, "code": code, ...}`` at the API boundary.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    LEDGER_ERROR = "LEDGER_ERROR"
    SYNC_PENDING = "SYNC_PENDING"
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class FactoraError(Exception):
    """Base exception with structured error info."""

    status_code = 500
    code = ErrorCode.CONFLICT

    def __init__(
        self,
        message: str,
        detail: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to API response format."""
        result: dict[str, Any] = {
            "error": self.message,
            "code": self.code.value,
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class AuthenticationError(FactoraError):
    """No identity, or an identity token that cannot be verified."""
    status_code = 401
    code = ErrorCode.AUTHENTICATION_FAILED


class AuthorizationError(FactoraError):
    """Role or ownership mismatch for the requested action."""
    status_code = 403
    code = ErrorCode.NOT_AUTHORIZED


class ValidationError(FactoraError):
    """Malformed or missing payload fields."""
    status_code = 400
    code = ErrorCode.INVALID_PAYLOAD


class NotFoundError(FactoraError):
    """Unknown invoice or profile."""
    status_code = 404
    code = ErrorCode.NOT_FOUND


class ConflictError(FactoraError):
    """Precondition violated by a concurrent transition."""
    status_code = 409
    code = ErrorCode.CONFLICT


class InvalidTransitionError(ConflictError):
    """Transition attempted from a state that is not a valid precondition."""
    code = ErrorCode.INVALID_TRANSITION

    def __init__(self, invoice_id: str, action: str, status: str, reason: str = "") -> None:
        message = f"Cannot {action} invoice in status {status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            context={"invoice_id": invoice_id, "action": action, "status": status},
        )


class LedgerErrorKind(str, Enum):
    """Classification of ledger purchase failures."""
    USER_REJECTED = "UserRejected"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    ALREADY_SOLD_ON_CHAIN = "AlreadySoldOnChain"
    UNKNOWN = "Unknown"


_LEDGER_STATUS = {
    LedgerErrorKind.USER_REJECTED: 400,
    LedgerErrorKind.INSUFFICIENT_FUNDS: 402,
    LedgerErrorKind.ALREADY_SOLD_ON_CHAIN: 409,
    LedgerErrorKind.UNKNOWN: 502,
}


class LedgerError(FactoraError):
    """The ledger step failed; the invoice has not advanced past Settling."""
    code = ErrorCode.LEDGER_ERROR

    def __init__(
        self,
        kind: LedgerErrorKind,
        message: str,
        detail: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.kind = kind
        super().__init__(message, detail=detail, context={"kind": kind.value, **(context or {})})

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return _LEDGER_STATUS[self.kind]


class SyncError(FactoraError):
    """
    The ledger confirmed a purchase but the store commit failed.

    Recoverable through reconciliation. Always carries the transaction hash
    so the commit can be re-applied.
    """
    status_code = 503
    code = ErrorCode.SYNC_PENDING

    def __init__(self, invoice_id: str, tx_hash: str, detail: str | None = None) -> None:
        self.invoice_id = invoice_id
        self.tx_hash = tx_hash
        super().__init__(
            f"Purchase confirmed on ledger (tx {tx_hash}) but not yet recorded; "
            "reconciliation pending",
            detail=detail,
            context={"invoice_id": invoice_id, "tx_hash": tx_hash},
        )


class IntegrityError(FactoraError):
    """Store and ledger disagree in a way that must not be overwritten."""
    status_code = 500
    code = ErrorCode.INTEGRITY_VIOLATION


class StoreError(FactoraError):
    """The record store could not complete an operation."""
    status_code = 503
    code = ErrorCode.STORE_UNAVAILABLE
