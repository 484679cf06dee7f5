from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from .errors import InvoiceValidationError
from .invoice_types import CrateTransactionIn
from .money import ZERO, parse_amount, q2

CRATE_NONE = "none"
CRATE_CREATE = "create"
CRATE_UPDATE = "update"
CRATE_DELETE = "delete"


@dataclass(frozen=True)
class PartyDelta:
    party_type: str  # vendor | retailer
    party_id: str
    # vendor.balance (payable) or retailer.udhaar_balance (receivable)
    balance: Decimal = ZERO
    shortfall: Decimal = ZERO

    def is_zero(self) -> bool:
        return self.balance == 0 and self.shortfall == 0


@dataclass(frozen=True)
class StockDelta:
    item_id: str
    kgs: Decimal
    crates: Decimal
    boxes: Decimal

    def is_zero(self) -> bool:
        return self.kgs == 0 and self.crates == 0 and self.boxes == 0


@dataclass(frozen=True)
class CrateOp:
    action: str = CRATE_NONE
    crate_id: Optional[str] = None
    party_type: Optional[str] = None
    party_id: Optional[str] = None
    transaction_type: Optional[str] = None
    quantity: Optional[int] = None
    transaction_date: Optional[date] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class WriteIntent:
    """Everything one invoice write must change besides the invoice row itself."""

    party_deltas: tuple
    stock_deltas: tuple
    crate_op: CrateOp
    movement_type: str  # IN (purchase) | OUT (sales)

    def summary(self) -> dict:
        return {
            "parties": [
                {"type": d.party_type, "id": d.party_id, "balance": d.balance, "shortfall": d.shortfall}
                for d in self.party_deltas
            ],
            "stock": [
                {"item_id": s.item_id, "kgs": s.kgs, "crates": s.crates, "boxes": s.boxes}
                for s in self.stock_deltas
            ],
            "crate": self.crate_op.action,
        }


def _qty(line, name: str) -> Decimal:
    if isinstance(line, Mapping):
        raw = line.get(name)
    else:
        raw = getattr(line, name, None)
    return q2(parse_amount(raw, field=name))


def _stock_by_item(lines: Optional[Iterable]) -> dict:
    out: dict = {}
    for ln in lines or []:
        item_id = str(ln.get("item_id") if isinstance(ln, Mapping) else getattr(ln, "item_id", "")).strip()
        if not item_id:
            continue
        kgs, crates, boxes = out.get(item_id, (ZERO, ZERO, ZERO))
        out[item_id] = (
            kgs + _qty(ln, "weight"),
            crates + _qty(ln, "crates"),
            boxes + _qty(ln, "boxes"),
        )
    return out


def stock_deltas(old_lines: Optional[Iterable], new_lines: Optional[Iterable], sign: int) -> tuple:
    """
    Per-item stock change when an invoice's lines go from old to new.

    sign=+1 for purchases (stock in), -1 for sales (stock out). Items are
    returned sorted so row locks are always taken in the same order.
    """
    old = _stock_by_item(old_lines)
    new = _stock_by_item(new_lines)
    out = []
    for item_id in sorted(set(old) | set(new)):
        o = old.get(item_id, (ZERO, ZERO, ZERO))
        n = new.get(item_id, (ZERO, ZERO, ZERO))
        d = StockDelta(
            item_id=item_id,
            kgs=(n[0] - o[0]) * sign,
            crates=(n[1] - o[1]) * sign,
            boxes=(n[2] - o[2]) * sign,
        )
        if not d.is_zero():
            out.append(d)
    return tuple(out)


def plan_crate_op(
    existing: Optional[Mapping],
    requested: Optional[CrateTransactionIn],
    *,
    requested_present: bool,
    party_type: str,
    party_id: str,
    default_type: str,
    invoice_date: Optional[date],
    notes: Optional[str] = None,
) -> CrateOp:
    """
    Decide what happens to the invoice's linked crate transaction.

    requested_present=False means the caller did not mention crates at all
    (keep whatever exists). An explicit null, or enabled=False, removes it.
    """
    if not requested_present:
        if existing and str(existing.get("party_id") or "") != str(party_id):
            # Party moved to another vendor/retailer; the crates follow it.
            return CrateOp(
                action=CRATE_UPDATE,
                crate_id=str(existing["id"]),
                party_type=party_type,
                party_id=party_id,
                transaction_type=existing.get("transaction_type"),
                quantity=existing.get("quantity"),
                transaction_date=existing.get("transaction_date"),
                notes=existing.get("notes"),
            )
        return CrateOp()

    if requested is None or not requested.enabled:
        if existing:
            return CrateOp(action=CRATE_DELETE, crate_id=str(existing["id"]))
        return CrateOp()

    if requested.quantity is None or requested.quantity < 1:
        raise InvoiceValidationError("crate_transaction: quantity is required when enabled")

    wanted = CrateOp(
        action=CRATE_CREATE,
        party_type=party_type,
        party_id=party_id,
        transaction_type=requested.transaction_type or default_type,
        quantity=int(requested.quantity),
        transaction_date=requested.transaction_date or invoice_date,
        notes=requested.notes or notes,
    )
    if not existing:
        return wanted

    unchanged = (
        str(existing.get("party_id") or "") == str(party_id)
        and existing.get("transaction_type") == wanted.transaction_type
        and int(existing.get("quantity") or 0) == wanted.quantity
        and existing.get("transaction_date") == wanted.transaction_date
    )
    if unchanged:
        return CrateOp()
    return CrateOp(
        action=CRATE_UPDATE,
        crate_id=str(existing["id"]),
        party_type=wanted.party_type,
        party_id=wanted.party_id,
        transaction_type=wanted.transaction_type,
        quantity=wanted.quantity,
        transaction_date=wanted.transaction_date,
        notes=wanted.notes,
    )


def _party_deltas(party_type: str, old_party: Optional[str], old_amount: Decimal, new_party: Optional[str], new_amount: Decimal, *, old_shortfall: Decimal = ZERO) -> tuple:
    if old_party and new_party and str(old_party) == str(new_party):
        d = PartyDelta(party_type, str(new_party), balance=new_amount - old_amount, shortfall=-old_shortfall)
        return () if d.is_zero() else (d,)
    out = []
    if old_party:
        d = PartyDelta(party_type, str(old_party), balance=-old_amount, shortfall=-old_shortfall)
        if not d.is_zero():
            out.append(d)
    if new_party:
        d = PartyDelta(party_type, str(new_party), balance=new_amount)
        if not d.is_zero():
            out.append(d)
    return tuple(out)


# Purchases: the vendor is owed the invoice's outstanding balance; stock comes in.

def plan_purchase_create(vendor_id: str, totals, crate_op: CrateOp) -> WriteIntent:
    return WriteIntent(
        party_deltas=_party_deltas("vendor", None, ZERO, vendor_id, totals.balance_amount),
        stock_deltas=stock_deltas(None, totals.lines, +1),
        crate_op=crate_op,
        movement_type="IN",
    )


def plan_purchase_edit(old_invoice: Mapping, old_lines: Iterable, vendor_id: str, totals, crate_op: CrateOp) -> WriteIntent:
    # Only the difference is applied; re-adding the full new amount would double count.
    old_balance = Decimal(str(old_invoice.get("balance_amount") or 0))
    return WriteIntent(
        party_deltas=_party_deltas("vendor", old_invoice.get("vendor_id"), old_balance, vendor_id, totals.balance_amount),
        stock_deltas=stock_deltas(old_lines, totals.lines, +1),
        crate_op=crate_op,
        movement_type="IN",
    )


def plan_purchase_delete(old_invoice: Mapping, old_lines: Iterable, existing_crate: Optional[Mapping]) -> WriteIntent:
    old_balance = Decimal(str(old_invoice.get("balance_amount") or 0))
    return WriteIntent(
        party_deltas=_party_deltas("vendor", old_invoice.get("vendor_id"), old_balance, None, ZERO),
        stock_deltas=stock_deltas(old_lines, None, +1),
        crate_op=CrateOp(action=CRATE_DELETE, crate_id=str(existing_crate["id"])) if existing_crate else CrateOp(),
        movement_type="IN",
    )


# Sales: the retailer owes the outstanding balance (udhaar); stock goes out.

def plan_sales_create(retailer_id: str, totals, crate_op: CrateOp) -> WriteIntent:
    return WriteIntent(
        party_deltas=_party_deltas("retailer", None, ZERO, retailer_id, totals.balance_amount),
        stock_deltas=stock_deltas(None, totals.lines, -1),
        crate_op=crate_op,
        movement_type="OUT",
    )


def plan_sales_edit(old_invoice: Mapping, old_lines: Iterable, retailer_id: str, totals, crate_op: CrateOp) -> WriteIntent:
    old_balance = Decimal(str(old_invoice.get("balance_amount") or 0))
    return WriteIntent(
        party_deltas=_party_deltas("retailer", old_invoice.get("retailer_id"), old_balance, retailer_id, totals.balance_amount),
        stock_deltas=stock_deltas(old_lines, totals.lines, -1),
        crate_op=crate_op,
        movement_type="OUT",
    )


def plan_sales_delete(old_invoice: Mapping, old_lines: Iterable, existing_crate: Optional[Mapping]) -> WriteIntent:
    old_balance = Decimal(str(old_invoice.get("balance_amount") or 0))
    old_shortfall = Decimal(str(old_invoice.get("shortfall_amount") or 0))
    return WriteIntent(
        party_deltas=_party_deltas(
            "retailer", old_invoice.get("retailer_id"), old_balance, None, ZERO, old_shortfall=old_shortfall
        ),
        stock_deltas=stock_deltas(old_lines, None, -1),
        crate_op=CrateOp(action=CRATE_DELETE, crate_id=str(existing_crate["id"])) if existing_crate else CrateOp(),
        movement_type="OUT",
    )
