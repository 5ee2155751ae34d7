"""
Payload validation rules for lifecycle actions.

Pure functions, no I/O. Each rule either returns the normalized value or
raises ValidationError naming the offending field, so the caller rejects
the request before touching the store.

Design Decisions:
- Monetary values are parsed to Decimal from str/int/Decimal; floats are
  routed through str() to avoid binary rounding artifacts
- Emails are normalized once here and compared normalized everywhere else
- Validation of shape is separate from authorization and state checks
"""

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import ValidationError
from .models import Role, normalize_email


# Two decimal places is the precision of every amount the store keeps
MONEY_QUANTUM = Decimal("0.01")

# Deliberately loose: the identity provider owns real email verification
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MAX_INVOICE_NUMBER_LENGTH = 64


@dataclass(frozen=True)
class InvoiceDraft:
    """Validated create payload."""
    invoice_number: str
    amount: Decimal
    due_date: date
    buyer_email: str
    pdf_reference: str | None = None


def parse_money(value: Any, field_name: str) -> Decimal:
    """
    Parse a strictly positive monetary amount.

    Raises:
        ValidationError: if the value is missing, not numeric, or <= 0
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} is required", context={"field": field_name})
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(
            f"{field_name} must be a number",
            context={"field": field_name, "value": str(value)},
        )
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(
            f"{field_name} must be greater than zero",
            context={"field": field_name, "value": str(value)},
        )
    return amount.quantize(MONEY_QUANTUM)


def parse_due_date(value: Any) -> date:
    """Accept a date or an ISO-8601 date string."""
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValidationError(
        "due_date must be an ISO date (YYYY-MM-DD)",
        context={"field": "due_date"},
    )


def parse_email(value: Any, field_name: str = "buyer_email") -> str:
    if not isinstance(value, str) or not EMAIL_PATTERN.match(value.strip()):
        raise ValidationError(f"{field_name} must be a valid email address", context={"field": field_name})
    return normalize_email(value)


def parse_role(value: Any) -> Role:
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(r.value for r in Role)
        raise ValidationError(f"role must be one of: {allowed}", context={"field": "role"})


def validate_invoice_draft(payload: dict[str, Any]) -> InvoiceDraft:
    """
    Validate a create payload.

    Rule: invoice_number, amount > 0, due_date and buyer_email are required.
    pdf_reference is an opaque handle and is passed through untouched.
    """
    invoice_number = payload.get("invoice_number")
    if not isinstance(invoice_number, str) or not invoice_number.strip():
        raise ValidationError("invoice_number is required", context={"field": "invoice_number"})
    invoice_number = invoice_number.strip()
    if len(invoice_number) > MAX_INVOICE_NUMBER_LENGTH:
        raise ValidationError(
            f"invoice_number must be at most {MAX_INVOICE_NUMBER_LENGTH} characters",
            context={"field": "invoice_number"},
        )

    pdf_reference = payload.get("pdf_reference")
    if pdf_reference is not None and not isinstance(pdf_reference, str):
        raise ValidationError("pdf_reference must be a string", context={"field": "pdf_reference"})

    return InvoiceDraft(
        invoice_number=invoice_number,
        amount=parse_money(payload.get("amount"), "amount"),
        due_date=parse_due_date(payload.get("due_date")),
        buyer_email=parse_email(payload.get("buyer_email")),
        pdf_reference=pdf_reference,
    )
