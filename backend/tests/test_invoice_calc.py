from decimal import Decimal

import pytest

from backend.app.errors import InvoiceValidationError
from backend.app.invoice_calc import (
    EXPENSE_FIELDS,
    clamp_commission_rate,
    compute_line,
    compute_purchase_totals,
    compute_sales_totals,
    derive_payment_status,
    select_quantity,
)
from backend.app.invoice_types import InvoiceLineIn, PurchaseInvoiceIn, SalesInvoiceIn
from backend.app.money import q2

UNITS = {"tomato": "KGS", "mango": "CRATE", "grapes": "BOX"}


def _purchase(**kwargs):
    base = {
        "vendor_id": "v1",
        "lines": [{"item_id": "tomato", "weight": "100", "rate": "10"}],
        "commission_rate": "5",
    }
    base.update(kwargs)
    return PurchaseInvoiceIn(**base)


def _sales(**kwargs):
    base = {"retailer_id": "r1", "lines": [{"item_id": "tomato", "weight": "50", "rate": "10"}]}
    base.update(kwargs)
    return SalesInvoiceIn(**base)


def test_select_quantity_follows_item_unit():
    w, c, b = Decimal("10"), Decimal("3"), Decimal("2")
    assert select_quantity("KGS", w, c, b) == w
    assert select_quantity("crate", w, c, b) == c
    assert select_quantity("BOX", w, c, b) == b
    assert select_quantity("unknown", w, c, b) == w


def test_compute_line_uses_quantity_for_unit():
    kg = compute_line(InvoiceLineIn(item_id="tomato", weight="12.5", crates="4", rate="8"), "KGS")
    assert kg.amount == Decimal("100.00")

    crate = compute_line(InvoiceLineIn(item_id="mango", weight="40", crates="3", rate="120.5"), "CRATE")
    assert crate.amount == Decimal("361.50")

    box = compute_line(InvoiceLineIn(item_id="grapes", boxes="2", rate="99.999"), "BOX")
    assert box.amount == Decimal("200.00")


def test_compute_line_preview_defaults_bad_values_to_zero():
    recovered = []
    line = compute_line(
        InvoiceLineIn(item_id="tomato", weight="abc", rate="-3"),
        "KGS",
        line_no=2,
        recovered=recovered,
    )
    assert line.amount == Decimal("0.00")
    assert recovered == ["item 2: weight", "item 2: rate"]


def test_compute_line_strict_rejects_non_positive_rate():
    with pytest.raises(InvoiceValidationError) as ex:
        compute_line(InvoiceLineIn(item_id="tomato", weight="10", rate="0"), "KGS", strict=True, line_no=4)
    assert ex.value.detail == "item 4: rate must be > 0"


def test_compute_line_strict_requires_quantity_for_unit():
    with pytest.raises(InvoiceValidationError) as ex:
        compute_line(InvoiceLineIn(item_id="mango", weight="10", rate="5"), "CRATE", strict=True)
    assert ex.value.detail == "item 1: crates is required"


def test_clamp_commission_rate():
    assert clamp_commission_rate("150") == Decimal("100")
    assert clamp_commission_rate("-10") == Decimal("0")
    assert clamp_commission_rate("7.5") == Decimal("7.5")
    assert clamp_commission_rate(None) == Decimal("0")
    assert clamp_commission_rate("abc") == Decimal("0")
    with pytest.raises(InvoiceValidationError):
        clamp_commission_rate("abc", strict=True)


def test_derive_payment_status_three_way_rule():
    assert derive_payment_status(Decimal("0"), Decimal("500")) == "Pending"
    assert derive_payment_status(Decimal("200"), Decimal("500")) == "Partial"
    assert derive_payment_status(Decimal("500"), Decimal("500")) == "Paid"
    assert derive_payment_status(Decimal("700"), Decimal("500")) == "Paid"
    assert derive_payment_status(Decimal("0"), Decimal("900"), "purchase") == "Unpaid"
    assert derive_payment_status(Decimal("100"), Decimal("900"), "purchase") == "Partially Paid"


def test_purchase_totals_commission_and_expenses():
    totals = compute_purchase_totals(_purchase(labour="20", truck_freight="30"), UNITS, strict=True)
    assert totals.total_selling == Decimal("1000.00")
    assert totals.commission_amount == Decimal("50.00")
    assert totals.total_expense == Decimal("100.00")
    assert totals.net_amount == Decimal("900.00")
    assert totals.total_less_expenses == totals.net_amount
    assert totals.balance_amount == Decimal("900.00")
    assert totals.status == "Unpaid"


def test_purchase_net_can_go_negative():
    data = _purchase(lines=[{"item_id": "tomato", "weight": "10", "rate": "1"}], commission_rate="0", labour="50")
    totals = compute_purchase_totals(data, UNITS, strict=True)
    assert totals.net_amount == Decimal("-40.00")
    assert totals.balance_amount == Decimal("-40.00")


def test_purchase_commission_rate_is_clamped_not_rejected():
    totals = compute_purchase_totals(_purchase(commission_rate="150"), UNITS, strict=True)
    assert totals.commission_rate == Decimal("100")
    assert totals.net_amount == Decimal("0.00")


def test_purchase_uses_default_commission_when_omitted():
    data = _purchase(commission_rate=None)
    totals = compute_purchase_totals(data, UNITS, strict=True, default_commission_rate=Decimal("2"))
    assert totals.commission_amount == Decimal("20.00")


def test_purchase_strict_rejects_negative_expense():
    with pytest.raises(InvoiceValidationError) as ex:
        compute_purchase_totals(_purchase(vatav="-1"), UNITS, strict=True)
    assert ex.value.detail == "vatav must be >= 0"


def test_strict_rejects_empty_and_unknown_lines():
    with pytest.raises(InvoiceValidationError) as ex:
        compute_purchase_totals(_purchase(lines=[]), UNITS, strict=True)
    assert ex.value.detail == "lines is required"

    with pytest.raises(InvoiceValidationError) as ex:
        compute_sales_totals(_sales(lines=[{"item_id": "okra", "weight": "1", "rate": "1"}]), UNITS, strict=True)
    assert ex.value.detail == "item 1: unknown item_id okra"


def test_sales_totals_overpayment_clamps_balance():
    totals = compute_sales_totals(_sales(paid_amount="700"), UNITS, strict=True)
    assert totals.total_amount == Decimal("500.00")
    assert totals.balance_amount == Decimal("0")
    assert totals.status == "Paid"


def test_sales_totals_partial_and_pending():
    partial = compute_sales_totals(_sales(paid_amount="200"), UNITS, strict=True)
    assert partial.balance_amount == Decimal("300.00")
    assert partial.status == "Partial"

    pending = compute_sales_totals(_sales(), UNITS, strict=True)
    assert pending.balance_amount == Decimal("500.00")
    assert pending.status == "Pending"


def test_recomputation_is_idempotent():
    data = _purchase(
        lines=[
            {"item_id": "tomato", "weight": "33.33", "rate": "17.17"},
            {"item_id": "mango", "crates": "7", "rate": "123.456"},
        ],
        commission_rate="6.5",
        labour="12.345",
    )
    first = compute_purchase_totals(data, UNITS, strict=True)
    second = compute_purchase_totals(data, UNITS, strict=True)
    assert first.to_dict() == second.to_dict()
    assert first.total_selling == sum(ln.amount for ln in first.lines)



def test_line_amount_matches_stored_quantity_and_rate():
    line = compute_line(InvoiceLineIn(item_id="tomato", weight="12.345", rate="8"), "KGS")
    assert (line.weight, line.rate) == (Decimal("12.35"), Decimal("8.00"))
    assert line.amount == line.weight * line.rate == Decimal("98.80")


def test_recomputing_from_stored_values_gives_same_totals():
    data = _purchase(
        lines=[
            {"item_id": "tomato", "weight": "12.345", "rate": "8.005"},
            {"item_id": "mango", "crates": "3", "rate": "120.555"},
        ],
        commission_rate="7.555",
        labour="12.345",
    )
    first = compute_purchase_totals(data, UNITS, strict=True).to_dict()
    assert first["commission_rate"] == Decimal("7.56")

    stored = _purchase(
        lines=[
            {k: ln[k] for k in ("item_id", "weight", "crates", "boxes", "rate")}
            for ln in first["lines"]
        ],
        commission_rate=first["commission_rate"],
        **{name: first[name] for name in EXPENSE_FIELDS},
    )
    second = compute_purchase_totals(stored, UNITS, strict=True).to_dict()
    assert second == first
    for ln in second["lines"]:
        qty = ln["crates"] if ln["unit"] == "CRATE" else ln["weight"]
        assert ln["amount"] == q2(qty * ln["rate"])


def test_preview_reports_recovered_fields():
    data = _sales(lines=[{"item_id": "tomato", "weight": "ten", "rate": "10"}], paid_amount="x")
    totals = compute_sales_totals(data, UNITS, strict=False)
    assert totals.total_amount == Decimal("0")
    assert totals.to_dict()["recovered_fields"] == ["item 1: weight", "paid_amount"]
