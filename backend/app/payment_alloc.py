from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping

from .errors import InvoiceValidationError
from .invoice_calc import derive_payment_status
from .money import ZERO, parse_amount, q2


@dataclass(frozen=True)
class Allocation:
    invoice_id: str
    # What is recorded as the payment row vs. what reduced the amount owed.
    received: Decimal
    applied: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    status: str


def _d(row: Mapping, key: str) -> Decimal:
    return Decimal(str(row.get(key) or 0))


def parse_payment_amount(raw) -> Decimal:
    amount = q2(parse_amount(raw, field="amount", strict=True, required=True))
    if amount <= 0:
        raise InvoiceValidationError("amount must be > 0")
    return amount


def apply_vendor_payment(invoice: Mapping, amount: Decimal) -> Allocation:
    """
    Apply a payment to a purchase invoice.

    Only the outstanding balance can be absorbed; any excess is left with the
    caller instead of pushing the invoice balance below zero.
    """
    net = _d(invoice, "net_amount")
    paid = _d(invoice, "paid_amount")
    outstanding = max(ZERO, _d(invoice, "balance_amount"))
    applied = min(amount, outstanding)
    new_paid = paid + applied
    return Allocation(
        invoice_id=str(invoice["id"]),
        received=applied,
        applied=applied,
        paid_amount=new_paid,
        balance_amount=net - new_paid,
        status=derive_payment_status(new_paid, net, "purchase"),
    )


def apply_sales_payment(invoice: Mapping, amount: Decimal) -> Allocation:
    """
    Apply a payment to a sales invoice.

    paid_amount records everything received; balance is floored at 0 so an
    overpayment shows as Paid with nothing due. `applied` is the part that
    actually reduced the amount owed (what comes off the retailer's udhaar).
    """
    total = _d(invoice, "total_amount")
    paid = _d(invoice, "paid_amount")
    outstanding = max(ZERO, _d(invoice, "balance_amount"))
    new_paid = paid + amount
    return Allocation(
        invoice_id=str(invoice["id"]),
        received=amount,
        applied=min(amount, outstanding),
        paid_amount=new_paid,
        balance_amount=max(ZERO, total - new_paid),
        status=derive_payment_status(new_paid, total, "sales"),
    )


def distribute_payment(invoices: Iterable[Mapping], amount: Decimal, kind: str) -> tuple[list[Allocation], Decimal]:
    """
    Spread a payment over open invoices in the order given (oldest first).

    Each invoice takes at most its outstanding balance. Returns the
    allocations and whatever could not be placed.
    """
    remaining = amount
    out: list[Allocation] = []
    for inv in invoices or []:
        if remaining <= 0:
            break
        outstanding = _d(inv, "balance_amount")
        if outstanding <= 0:
            continue
        share = min(remaining, outstanding)
        out.append(apply_payment_to_invoice(inv, share, kind))
        remaining -= share
    return out, remaining


def apply_payment_to_invoice(invoice: Mapping, amount: Decimal, kind: str) -> Allocation:
    if kind == "purchase":
        return apply_vendor_payment(invoice, amount)
    return apply_sales_payment(invoice, amount)
