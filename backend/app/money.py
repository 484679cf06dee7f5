from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from .errors import CalculationError, InvoiceValidationError

MONEY_Q = Decimal("0.01")
ZERO = Decimal("0")


def q2(v: Optional[Decimal]) -> Decimal:
    return (v or ZERO).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def fmt2(v: Optional[Decimal]) -> str:
    return str(q2(v))


def _label(field: str, line_label: Optional[str]) -> str:
    return f"{line_label}: {field}" if line_label else field


def parse_amount(
    raw,
    *,
    field: str,
    line_label: Optional[str] = None,
    strict: bool = False,
    required: bool = False,
    recovered: Optional[list] = None,
) -> Decimal:
    """
    Parse a user-supplied quantity/amount.

    strict=True (submission): non-numeric or negative values raise
    InvoiceValidationError naming the field (and line when given).
    strict=False (preview): they become 0 and are appended to `recovered`.
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if strict and required:
            raise InvoiceValidationError(f"{_label(field, line_label)} is required")
        return ZERO

    problem = None
    value = ZERO
    if isinstance(raw, bool):
        problem = "must be a number"
    else:
        try:
            value = Decimal(str(raw).strip())
        except (InvalidOperation, ValueError):
            problem = "must be a number"
        else:
            if not value.is_finite():
                problem = "must be a number"
            elif value < 0:
                problem = "must be >= 0"

    if problem is None:
        return value
    if strict:
        raise InvoiceValidationError(f"{_label(field, line_label)} {problem}")
    if recovered is not None:
        recovered.append(_label(field, line_label))
    return ZERO


def ensure_finite(v: Decimal, what: str) -> Decimal:
    if not isinstance(v, Decimal) or not v.is_finite():
        raise CalculationError(f"{what} is not a finite number")
    return v
