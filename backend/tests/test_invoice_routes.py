from contextlib import nullcontext
from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.invoice_calc import derive_payment_status
from backend.app.invoice_types import InvoicePreviewIn, PurchaseInvoiceIn, SalesInvoiceIn
from backend.app.routers import invoices as invoices_router
from backend.app.routers import purchase_invoices as purchase_router
from backend.app.routers import sales_invoices as sales_router

DAY = date(2026, 1, 5)
USER = {"user_id": "u1"}
ITEMS = ("from items where", [{"id": "i1", "unit": "KGS"}])


class _FakeCursor:
    def __init__(self, responses):
        self.responses = list(responses)
        self.executed: list[tuple[str, tuple]] = []
        self.rows = []
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.executed.append((text, tuple(params or ())))
        self.rows = []
        for needle, rows in self.responses:
            if needle in text:
                self.rows = list(rows)
                break
        self.rowcount = 1

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)

    def params_for(self, needle):
        return [params for sql, params in self.executed if needle in sql]


class _FakeConn:
    def __init__(self, cur):
        self._cur = cur

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cur

    def transaction(self):
        return nullcontext()


def _patch_db(monkeypatch, module, responses):
    cur = _FakeCursor(responses)
    conn = _FakeConn(cur)
    monkeypatch.setattr(module, "get_conn", lambda: conn)
    monkeypatch.setattr(module, "set_tenant_context", lambda *_args, **_kwargs: None)
    return cur


def _old_purchase(**kwargs):
    row = {
        "id": "inv-1",
        "invoice_no": "PI-000001",
        "vendor_id": "v1",
        "invoice_date": DAY,
        "net_amount": Decimal("1000.00"),
        "paid_amount": Decimal("0.00"),
        "balance_amount": Decimal("1000.00"),
        "status": "Unpaid",
    }
    row.update(kwargs)
    return row


def _old_sales(**kwargs):
    row = {
        "id": "s-1",
        "invoice_no": "SI-000001",
        "retailer_id": "r1",
        "invoice_date": DAY,
        "total_amount": Decimal("500.00"),
        "paid_amount": Decimal("200.00"),
        "balance_amount": Decimal("300.00"),
        "shortfall_amount": Decimal("0.00"),
        "status": "Partial",
    }
    row.update(kwargs)
    return row


def test_create_purchase_invoice_applies_net_to_vendor(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        purchase_router,
        [
            ("select 1 from vendors", [{"ok": 1}]),
            ITEMS,
            ("next_document_no", [{"doc_no": "PI-000001"}]),
            ("insert into purchase_invoices", [{"id": "inv-1", "invoice_date": DAY}]),
            ("from vendors", [{"id": "v1", "balance": Decimal("500")}]),
            ("insert into crate_transactions", [{"id": "crate-1"}]),
        ],
    )
    data = PurchaseInvoiceIn(
        vendor_id="v1",
        invoice_date=DAY,
        lines=[{"item_id": "i1", "weight": "100", "rate": "10"}],
        commission_rate="5",
        labour="20",
        crate_transaction={"quantity": 3},
    )

    out = purchase_router.create_purchase_invoice(data, tenant_id="t1", user=USER)

    assert out["invoice_no"] == "PI-000001"
    assert out["net_amount"] == Decimal("930.00")
    assert out["balance_amount"] == Decimal("930.00")
    assert out["status"] == "Unpaid"
    assert out["crate_transaction_id"] == "crate-1"
    assert cur.params_for("update vendors") == [(Decimal("930.00"), "t1", "v1")]
    assert len(cur.params_for("insert into purchase_invoice_lines")) == 1
    assert cur.params_for("insert into audit_logs")[0][2] == "purchase_invoice_created"


def test_create_purchase_invoice_rejects_bad_line_before_writing(monkeypatch):
    cur = _patch_db(monkeypatch, purchase_router, [("select 1 from vendors", [{"ok": 1}]), ITEMS])
    data = PurchaseInvoiceIn(vendor_id="v1", lines=[{"item_id": "i1", "weight": "abc", "rate": "10"}])

    with pytest.raises(HTTPException) as ex:
        purchase_router.create_purchase_invoice(data, tenant_id="t1", user=USER)

    assert ex.value.status_code == 400
    assert ex.value.detail == "item 1: weight must be a number"
    assert not cur.params_for("insert into purchase_invoices")


def test_update_purchase_invoice_applies_only_the_difference(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        purchase_router,
        [
            ("from purchase_invoices", [_old_purchase()]),
            ("from purchase_invoice_lines", [{"item_id": "i1", "weight": Decimal("100"), "crates": 0, "boxes": 0}]),
            ("select 1 from vendors", [{"ok": 1}]),
            ITEMS,
            ("from crate_transactions", []),
            ("update purchase_invoices", [{"invoice_date": DAY}]),
            ("from vendors", [{"id": "v1", "balance": Decimal("1500")}]),
        ],
    )
    data = PurchaseInvoiceIn(vendor_id="v1", lines=[{"item_id": "i1", "weight": "80", "rate": "10"}], commission_rate="0")

    out = purchase_router.update_purchase_invoice("inv-1", data, tenant_id="t1", user=USER)

    assert out["net_amount"] == Decimal("800.00")
    assert cur.params_for("update vendors") == [(Decimal("-200.00"), "t1", "v1")]
    stock_params = cur.params_for("update stock set")
    assert stock_params == [(Decimal("-20.00"), Decimal("0.00"), Decimal("0.00"), "t1", "i1")]
    assert not cur.params_for("insert into crate_transactions")


def test_update_purchase_invoice_refuses_net_below_paid(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        purchase_router,
        [
            ("from purchase_invoices", [_old_purchase(paid_amount=Decimal("900.00"), balance_amount=Decimal("100.00"))]),
            ("from purchase_invoice_lines", []),
            ("select 1 from vendors", [{"ok": 1}]),
            ITEMS,
        ],
    )
    data = PurchaseInvoiceIn(vendor_id="v1", lines=[{"item_id": "i1", "weight": "80", "rate": "10"}], commission_rate="0")

    with pytest.raises(HTTPException) as ex:
        purchase_router.update_purchase_invoice("inv-1", data, tenant_id="t1", user=USER)

    assert ex.value.status_code == 409
    assert not cur.params_for("update vendors")


def test_moving_paid_purchase_invoice_to_another_vendor_is_refused(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        purchase_router,
        [
            ("from purchase_invoices", [_old_purchase(paid_amount=Decimal("300.00"), balance_amount=Decimal("700.00"))]),
            ("from purchase_invoice_lines", []),
            ("select 1 from vendors", [{"ok": 1}]),
            ("from vendor_payments", [{"ok": 1}]),
        ],
    )
    data = PurchaseInvoiceIn(vendor_id="v2", lines=[{"item_id": "i1", "weight": "100", "rate": "10"}], commission_rate="0")

    with pytest.raises(HTTPException) as ex:
        purchase_router.update_purchase_invoice("inv-1", data, tenant_id="t1", user=USER)

    assert ex.value.status_code == 409
    assert not cur.params_for("update vendors")


def test_vendor_change_without_new_entries_keeps_billed_entries_linked(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        purchase_router,
        [
            ("from purchase_invoices", [_old_purchase()]),
            ("from purchase_invoice_lines", []),
            ("select 1 from vendors", [{"ok": 1}]),
            ("from vendor_payments", []),
            ("from stock_movements", [{"ok": 1}]),
        ],
    )
    data = PurchaseInvoiceIn(vendor_id="v2", lines=[{"item_id": "i1", "weight": "100", "rate": "10"}], commission_rate="0")

    with pytest.raises(HTTPException) as ex:
        purchase_router.update_purchase_invoice("inv-1", data, tenant_id="t1", user=USER)

    assert ex.value.status_code == 409
    assert not cur.params_for("update stock_movements")
    assert not cur.params_for("update vendors")


def test_delete_purchase_invoice_with_payments_is_refused(monkeypatch):
    _patch_db(
        monkeypatch,
        purchase_router,
        [("from purchase_invoices", [_old_purchase()]), ("from vendor_payments", [{"ok": 1}])],
    )
    with pytest.raises(HTTPException) as ex:
        purchase_router.delete_purchase_invoice("inv-1", tenant_id="t1", user=USER)
    assert ex.value.status_code == 409


def test_delete_purchase_invoice_reverses_balance_stock_and_crate(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        purchase_router,
        [
            ("from purchase_invoices", [_old_purchase()]),
            ("from vendor_payments", []),
            ("from purchase_invoice_lines", [{"item_id": "i1", "weight": Decimal("100"), "crates": 0, "boxes": 0}]),
            ("from crate_transactions", [{"id": "crate-1", "party_id": "v1"}]),
            ("from vendors", [{"id": "v1", "balance": Decimal("1500")}]),
        ],
    )

    assert purchase_router.delete_purchase_invoice("inv-1", tenant_id="t1", user=USER) == {"ok": True}
    assert cur.params_for("update vendors") == [(Decimal("-1000.00"), "t1", "v1")]
    assert cur.params_for("update stock set")[0][0] == Decimal("-100.00")
    assert cur.params_for("delete from crate_transactions") == [("t1", "crate-1")]
    assert cur.params_for("delete from purchase_invoices where") == [("t1", "inv-1")]


def test_create_sales_invoice_records_counter_payment_and_udhaar(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        sales_router,
        [
            ("select 1 from retailers", [{"ok": 1}]),
            ITEMS,
            ("next_document_no", [{"doc_no": "SI-000001"}]),
            ("insert into sales_invoices", [{"id": "s-1", "invoice_date": DAY}]),
            ("from retailers", [{"id": "r1", "udhaar_balance": Decimal("0"), "shortfall_balance": Decimal("0")}]),
        ],
    )
    data = SalesInvoiceIn(retailer_id="r1", lines=[{"item_id": "i1", "weight": "50", "rate": "10"}], paid_amount="200")

    out = sales_router.create_sales_invoice(data, tenant_id="t1", user=USER)

    assert (out["total_amount"], out["balance_amount"], out["status"]) == (Decimal("500.00"), Decimal("300.00"), "Partial")
    assert cur.params_for("insert into sales_payments")[0][3] == Decimal("200.00")
    assert cur.params_for("update retailers") == [(Decimal("300.00"), Decimal("0"), "t1", "r1")]
    assert cur.params_for("update stock set")[0][0] == Decimal("-50.00")


def test_edit_sales_invoice_with_shortfall_is_refused(monkeypatch):
    _patch_db(monkeypatch, sales_router, [("from sales_invoices", [_old_sales(shortfall_amount=Decimal("300"))])])
    data = SalesInvoiceIn(retailer_id="r1", lines=[{"item_id": "i1", "weight": "50", "rate": "10"}])
    with pytest.raises(HTTPException) as ex:
        sales_router.update_sales_invoice("s-1", data, tenant_id="t1", user=USER)
    assert ex.value.status_code == 409


def test_mark_paid_moves_remaining_balance_to_shortfall(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        sales_router,
        [("from sales_invoices", [_old_sales()]), ("from retailers", [{"id": "r1"}])],
    )

    out = sales_router.mark_sales_invoice_paid("s-1", tenant_id="t1", user=USER)

    assert out["status"] == "Paid"
    assert out["paid_amount"] == Decimal("200.00")
    assert out["shortfall_added"] == Decimal("300.00")
    assert cur.params_for("update retailers") == [(Decimal("-300.00"), Decimal("300.00"), "t1", "r1")]
    assert cur.params_for("update sales_invoices") == [(Decimal("300.00"), "Paid", "t1", "s-1")]


def test_mark_paid_status_comes_from_settled_amount(monkeypatch):
    _patch_db(
        monkeypatch,
        sales_router,
        [("from sales_invoices", [_old_sales()]), ("from retailers", [{"id": "r1"}])],
    )

    out = sales_router.mark_sales_invoice_paid("s-1", tenant_id="t1", user=USER)

    settled = out["paid_amount"] + out["shortfall_amount"]
    assert out["status"] == derive_payment_status(settled, Decimal("500.00"), "sales")
    assert out["balance_amount"] == max(Decimal("0"), Decimal("500.00") - settled)
    # Cash actually received is unchanged, so the plain rule still reads Partial.
    assert derive_payment_status(out["paid_amount"], Decimal("500.00"), "sales") == "Partial"


def test_mark_paid_without_balance_is_refused(monkeypatch):
    _patch_db(monkeypatch, sales_router, [("from sales_invoices", [_old_sales(balance_amount=Decimal("0"))])])
    with pytest.raises(HTTPException) as ex:
        sales_router.mark_sales_invoice_paid("s-1", tenant_id="t1", user=USER)
    assert ex.value.status_code == 409


def test_revert_status_restores_udhaar_from_payments(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        sales_router,
        [
            (
                "from sales_invoices",
                [_old_sales(status="Paid", balance_amount=Decimal("0"), shortfall_amount=Decimal("300.00"))],
            ),
            ("from sales_payments", [{"paid": Decimal("200.00")}]),
            ("from retailers", [{"id": "r1"}]),
        ],
    )

    out = sales_router.revert_sales_invoice_status("s-1", tenant_id="t1", user=USER)

    assert (out["status"], out["paid_amount"], out["balance_amount"]) == ("Partial", Decimal("200.00"), Decimal("300.00"))
    assert cur.params_for("update retailers") == [(Decimal("300.00"), Decimal("-300.00"), "t1", "r1")]


def test_preview_recovers_bad_numbers_without_writing(monkeypatch):
    cur = _patch_db(monkeypatch, invoices_router, [ITEMS])
    data = InvoicePreviewIn(
        invoice={"kind": "sales", "retailer_id": "r1", "lines": [{"item_id": "i1", "weight": "abc", "rate": "10"}]}
    )

    out = invoices_router.preview_invoice(data, tenant_id="t1")

    assert out["kind"] == "sales"
    assert out["total_amount"] == Decimal("0")
    assert out["recovered_fields"] == ["item 1: weight"]
    assert all(sql.startswith("select") for sql, _ in cur.executed)


def test_preview_dispatches_on_kind(monkeypatch):
    _patch_db(monkeypatch, invoices_router, [ITEMS])
    data = InvoicePreviewIn(
        invoice={
            "kind": "purchase",
            "vendor_id": "v1",
            "lines": [{"item_id": "i1", "weight": "10", "rate": "10"}],
            "commission_rate": "10",
        }
    )
    out = invoices_router.preview_invoice(data, tenant_id="t1")
    assert out["kind"] == "purchase"
    assert out["commission_amount"] == Decimal("10.00")
    assert out["net_amount"] == Decimal("90.00")


def test_preview_with_half_typed_item_id_still_computes(monkeypatch):
    cur = _patch_db(monkeypatch, invoices_router, [ITEMS])
    data = InvoicePreviewIn(
        invoice={"kind": "sales", "retailer_id": "r1", "lines": [{"item_id": "6f1d", "weight": "4", "rate": "5"}]}
    )

    out = invoices_router.preview_invoice(data, tenant_id="t1")

    assert out["total_amount"] == Decimal("20.00")
    assert not cur.params_for("from items")
