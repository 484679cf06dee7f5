from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping, Optional

from .errors import InvoiceValidationError
from .invoice_types import InvoiceLineIn, PurchaseInvoiceIn, SalesInvoiceIn
from .logs import json_log
from .money import ZERO, ensure_finite, parse_amount, q2
from .validation import UNIT_BOX, UNIT_CRATE, UNIT_KGS, normalize_unit

HUNDRED = Decimal("100")

# Flat purchase deductions, in the order they appear on the invoice.
EXPENSE_FIELDS = (
    "labour",
    "truck_freight",
    "crate_freight",
    "post_expenses",
    "draft_expenses",
    "vatav",
    "other_expenses",
    "advance",
)

STATUS_LABELS = {
    # (nothing paid, partly paid, fully paid)
    "sales": ("Pending", "Partial", "Paid"),
    "purchase": ("Unpaid", "Partially Paid", "Paid"),
}


@dataclass(frozen=True)
class CalculatedLine:
    item_id: str
    unit: str
    weight: Decimal
    crates: Decimal
    boxes: Decimal
    rate: Decimal
    amount: Decimal

    def quantity(self) -> Decimal:
        return select_quantity(self.unit, self.weight, self.crates, self.boxes)

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "unit": self.unit,
            "weight": q2(self.weight),
            "crates": q2(self.crates),
            "boxes": q2(self.boxes),
            "rate": q2(self.rate),
            "amount": self.amount,
        }


@dataclass(frozen=True)
class PurchaseTotals:
    lines: tuple
    commission_rate: Decimal
    commission_amount: Decimal
    expenses: dict
    total_selling: Decimal
    total_expense: Decimal
    net_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    status: str
    recovered: tuple = ()

    @property
    def total_less_expenses(self) -> Decimal:
        return self.net_amount

    def to_dict(self) -> dict:
        return {
            "kind": "purchase",
            "lines": [ln.to_dict() for ln in self.lines],
            "commission_rate": q2(self.commission_rate),
            "commission_amount": self.commission_amount,
            **self.expenses,
            "total_selling": self.total_selling,
            "total_expense": self.total_expense,
            "total_less_expenses": self.total_less_expenses,
            "net_amount": self.net_amount,
            "paid_amount": self.paid_amount,
            "balance_amount": self.balance_amount,
            "status": self.status,
            "recovered_fields": list(self.recovered),
        }


@dataclass(frozen=True)
class SalesTotals:
    lines: tuple
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    status: str
    recovered: tuple = ()

    def to_dict(self) -> dict:
        return {
            "kind": "sales",
            "lines": [ln.to_dict() for ln in self.lines],
            "total_amount": self.total_amount,
            "paid_amount": self.paid_amount,
            "balance_amount": self.balance_amount,
            "status": self.status,
            "recovered_fields": list(self.recovered),
        }


@dataclass(frozen=True)
class AggregatedLine:
    item_id: str
    weight: Decimal
    crates: Decimal
    boxes: Decimal
    rate: Decimal
    entry_ids: tuple = field(default_factory=tuple)

    def to_line_in(self) -> InvoiceLineIn:
        return InvoiceLineIn(
            item_id=self.item_id,
            weight=self.weight,
            crates=self.crates,
            boxes=self.boxes,
            rate=self.rate,
        )


def select_quantity(unit, weight: Decimal, crates: Decimal, boxes: Decimal) -> Decimal:
    u = normalize_unit(unit)
    if u == UNIT_CRATE:
        return crates
    if u == UNIT_BOX:
        return boxes
    return weight


def clamp_commission_rate(raw, *, strict: bool = False, recovered: Optional[list] = None) -> Decimal:
    """Commission % is clamped into [0, 100], never rejected for being out of range."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return ZERO
    try:
        rate = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        rate = None
    if rate is None or not rate.is_finite() or isinstance(raw, bool):
        if strict:
            raise InvoiceValidationError("commission_rate must be a number")
        if recovered is not None:
            recovered.append("commission_rate")
        return ZERO
    return q2(max(ZERO, min(HUNDRED, rate)))


def derive_payment_status(paid: Optional[Decimal], total: Optional[Decimal], kind: str = "sales") -> str:
    """
    The only place an invoice status is decided.

    nothing paid -> unpaid label; paid covers total -> Paid; otherwise partial.
    """
    unpaid, partial, done = STATUS_LABELS[kind]
    paid = paid or ZERO
    total = total or ZERO
    if paid <= 0:
        return unpaid
    if paid >= total:
        return done
    return partial


def compute_line(
    line: InvoiceLineIn,
    unit,
    *,
    strict: bool = False,
    line_no: int = 1,
    recovered: Optional[list] = None,
) -> CalculatedLine:
    label = f"item {line_no}"
    item_id = str(line.item_id or "").strip()
    if strict and not item_id:
        raise InvoiceValidationError(f"{label}: item_id is required")

    u = normalize_unit(unit)
    weight = parse_amount(
        line.weight, field="weight", line_label=label, strict=strict, required=(u == UNIT_KGS), recovered=recovered
    )
    crates = parse_amount(
        line.crates, field="crates", line_label=label, strict=strict, required=(u == UNIT_CRATE), recovered=recovered
    )
    boxes = parse_amount(
        line.boxes, field="boxes", line_label=label, strict=strict, required=(u == UNIT_BOX), recovered=recovered
    )
    rate = parse_amount(line.rate, field="rate", line_label=label, strict=strict, required=True, recovered=recovered)
    # Quantities and rate are stored at 2 dp; the amount is computed from the stored values.
    weight, crates, boxes, rate = q2(weight), q2(crates), q2(boxes), q2(rate)
    if strict and rate <= 0:
        raise InvoiceValidationError(f"{label}: rate must be > 0")

    amount = ensure_finite(select_quantity(u, weight, crates, boxes) * rate, f"{label}: amount")
    return CalculatedLine(
        item_id=item_id,
        unit=u,
        weight=weight,
        crates=crates,
        boxes=boxes,
        rate=rate,
        amount=q2(amount),
    )


def _compute_lines(lines, units_by_item: Mapping[str, str], *, strict: bool, recovered: list) -> tuple:
    if strict and not lines:
        raise InvoiceValidationError("lines is required")
    out = []
    for idx, ln in enumerate(lines or []):
        item_id = str(ln.item_id or "").strip()
        if strict and item_id and item_id not in units_by_item:
            raise InvoiceValidationError(f"item {idx+1}: unknown item_id {item_id}")
        out.append(
            compute_line(ln, units_by_item.get(item_id), strict=strict, line_no=idx + 1, recovered=recovered)
        )
    return tuple(out)


def _log_recovered(kind: str, recovered: list):
    if recovered:
        json_log("warning", "invoice.preview.recovered", kind=kind, fields=list(recovered))


def compute_purchase_totals(
    data: PurchaseInvoiceIn,
    units_by_item: Mapping[str, str],
    *,
    strict: bool = False,
    paid_amount: Optional[Decimal] = None,
    default_commission_rate=None,
) -> PurchaseTotals:
    recovered: list = []
    lines = _compute_lines(data.lines, units_by_item, strict=strict, recovered=recovered)

    raw_rate = data.commission_rate if data.commission_rate is not None else default_commission_rate
    commission_rate = clamp_commission_rate(raw_rate, strict=strict, recovered=recovered)

    expenses = {
        name: q2(parse_amount(getattr(data, name), field=name, strict=strict, recovered=recovered))
        for name in EXPENSE_FIELDS
    }

    total_selling = sum((ln.amount for ln in lines), ZERO)
    commission_amount = q2(ensure_finite(total_selling * commission_rate / HUNDRED, "commission_amount"))
    total_expense = commission_amount + sum(expenses.values(), ZERO)
    # Expenses above revenue give a negative net; that is shown, not floored.
    net_amount = ensure_finite(total_selling - total_expense, "net_amount")

    paid = q2(paid_amount)
    if not strict:
        _log_recovered("purchase", recovered)
    return PurchaseTotals(
        lines=lines,
        commission_rate=commission_rate,
        commission_amount=commission_amount,
        expenses=expenses,
        total_selling=total_selling,
        total_expense=total_expense,
        net_amount=net_amount,
        paid_amount=paid,
        balance_amount=net_amount - paid,
        status=derive_payment_status(paid, net_amount, "purchase"),
        recovered=tuple(recovered),
    )


def compute_sales_totals(
    data: SalesInvoiceIn,
    units_by_item: Mapping[str, str],
    *,
    strict: bool = False,
    paid_amount: Optional[Decimal] = None,
) -> SalesTotals:
    recovered: list = []
    lines = _compute_lines(data.lines, units_by_item, strict=strict, recovered=recovered)

    if paid_amount is None:
        paid_amount = parse_amount(data.paid_amount, field="paid_amount", strict=strict, recovered=recovered)
    paid = q2(paid_amount)

    total_amount = sum((ln.amount for ln in lines), ZERO)
    # Overpayment never produces a negative amount due.
    balance_amount = max(ZERO, total_amount - paid)

    if not strict:
        _log_recovered("sales", recovered)
    return SalesTotals(
        lines=lines,
        total_amount=total_amount,
        paid_amount=paid,
        balance_amount=balance_amount,
        status=derive_payment_status(paid, total_amount, "sales"),
        recovered=tuple(recovered),
    )


def aggregate_stock_out_entries(entries: Iterable[Mapping]) -> list[AggregatedLine]:
    """
    Collapse selected stock-out entries into one line per item.

    Quantities add up; the rate is the weight-weighted average
    sum(rate * weight) / sum(weight). An item whose entries carry no weight
    gets rate 0. Always called with the full selection.
    """
    groups: dict[str, dict] = {}
    for e in entries or []:
        item_id = str(e.get("item_id") or "").strip()
        if not item_id:
            continue
        weight = parse_amount(e.get("quantity_in_kgs"), field="quantity_in_kgs")
        crates = parse_amount(e.get("quantity_in_crates"), field="quantity_in_crates")
        boxes = parse_amount(e.get("quantity_in_boxes"), field="quantity_in_boxes")
        rate = parse_amount(e.get("rate"), field="rate")
        g = groups.setdefault(
            item_id,
            {"weight": ZERO, "crates": ZERO, "boxes": ZERO, "value": ZERO, "entry_ids": []},
        )
        g["weight"] += weight
        g["crates"] += crates
        g["boxes"] += boxes
        g["value"] += rate * weight
        if e.get("id") is not None:
            g["entry_ids"].append(str(e.get("id")))

    out = []
    for item_id, g in groups.items():
        avg = g["value"] / g["weight"] if g["weight"] > 0 else ZERO
        out.append(
            AggregatedLine(
                item_id=item_id,
                weight=g["weight"],
                crates=g["crates"],
                boxes=g["boxes"],
                rate=q2(ensure_finite(avg, f"{item_id}: weighted rate")),
                entry_ids=tuple(g["entry_ids"]),
            )
        )
    return out
