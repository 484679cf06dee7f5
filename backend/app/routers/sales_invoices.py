from fastapi import APIRouter, Depends, HTTPException
from decimal import Decimal
from typing import Optional
import json

from ..db import get_conn, set_tenant_context
from ..deps import get_tenant_id, get_current_user
from ..errors import ConsistencyError, InvoiceValidationError
from ..invoice_calc import SalesTotals, compute_sales_totals, derive_payment_status
from ..invoice_types import SalesInvoiceIn
from ..ledger_store import (
    apply_party_delta,
    apply_write_intent,
    load_invoice_crate,
    load_item_units,
    lock_party,
    require_party,
    sales_entries_billed,
)
from ..money import ZERO, parse_amount, q2
from ..reconcile import PartyDelta, plan_crate_op, plan_sales_create, plan_sales_delete, plan_sales_edit

router = APIRouter(prefix="/sales-invoices", tags=["sales-invoices"])

REFERENCE_TYPE = "SALES_INVOICE"
INVOICE_COLUMN = "sales_invoice_id"

_INVOICE_COLS = """
    id, invoice_no, retailer_id, invoice_date,
    total_amount, paid_amount, balance_amount, shortfall_amount, status,
    client_ref, created_at, updated_at
"""


def _next_doc_no(cur, tenant_id: str, doc_type: str) -> str:
    cur.execute("SELECT next_document_no(%s, %s) AS doc_no", (tenant_id, doc_type))
    return cur.fetchone()["doc_no"]


def _d(v) -> Decimal:
    return Decimal(str(v or 0))


def _lock_invoice(cur, tenant_id: str, invoice_id: str) -> dict:
    cur.execute(
        f"""
        SELECT {_INVOICE_COLS}
        FROM sales_invoices
        WHERE tenant_id = %s AND id = %s
        FOR UPDATE
        """,
        (tenant_id, invoice_id),
    )
    inv = cur.fetchone()
    if not inv:
        raise HTTPException(status_code=404, detail="invoice not found")
    return inv


def _load_lines(cur, tenant_id: str, invoice_id: str) -> list:
    cur.execute(
        """
        SELECT l.item_id, i.name AS item_name, l.unit, l.weight, l.crates, l.boxes, l.rate, l.amount
        FROM sales_invoice_lines l
        LEFT JOIN items i
          ON i.tenant_id = l.tenant_id AND i.id = l.item_id
        WHERE l.tenant_id = %s AND l.invoice_id = %s
        ORDER BY l.line_no
        """,
        (tenant_id, invoice_id),
    )
    return cur.fetchall()


def _insert_lines(cur, tenant_id: str, invoice_id: str, lines):
    for idx, ln in enumerate(lines, start=1):
        cur.execute(
            """
            INSERT INTO sales_invoice_lines
              (id, tenant_id, invoice_id, line_no, item_id, unit, weight, crates, boxes, rate, amount)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (tenant_id, invoice_id, idx, ln.item_id, ln.unit, ln.weight, ln.crates, ln.boxes, ln.rate, ln.amount),
        )


def calculate_sales(cur, tenant_id: str, data: SalesInvoiceIn, *, strict: bool = True, paid_amount=None) -> SalesTotals:
    units = load_item_units(cur, tenant_id, [ln.item_id for ln in data.lines], strict=strict)
    return compute_sales_totals(data, units, strict=strict, paid_amount=paid_amount)


def _crate_notes(invoice_no: Optional[str]) -> str:
    return f"Crates with sales invoice {invoice_no}" if invoice_no else "Crates with sales invoice"


def _audit(cur, tenant_id: str, user_id: str, action: str, invoice_id: str, details: dict):
    cur.execute(
        """
        INSERT INTO audit_logs (id, tenant_id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, 'sales_invoice', %s, %s::jsonb)
        """,
        (tenant_id, user_id, action, invoice_id, json.dumps(details, default=str)),
    )


def _settled_status(paid: Decimal, shortfall: Decimal, total: Decimal) -> str:
    # A shortfall written off by mark-paid counts as settled.
    return derive_payment_status(paid + shortfall, total, "sales")


@router.get("/{invoice_id}")
def get_sales_invoice(invoice_id: str, tenant_id: str = Depends(get_tenant_id)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_INVOICE_COLS}
                FROM sales_invoices
                WHERE tenant_id = %s AND id = %s
                """,
                (tenant_id, invoice_id),
            )
            inv = cur.fetchone()
            if not inv:
                raise HTTPException(status_code=404, detail="invoice not found")
            lines = _load_lines(cur, tenant_id, invoice_id)
            crate = load_invoice_crate(cur, tenant_id, INVOICE_COLUMN, invoice_id)
            cur.execute(
                """
                SELECT id, amount, payment_mode, payment_date, notes, created_at
                FROM sales_payments
                WHERE tenant_id = %s AND invoice_id = %s
                ORDER BY payment_date ASC, created_at ASC
                """,
                (tenant_id, invoice_id),
            )
            payments = cur.fetchall()
            return {"invoice": inv, "lines": lines, "crate_transaction": crate, "payments": payments}


@router.post("")
def create_sales_invoice(data: SalesInvoiceIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                require_party(cur, tenant_id, "retailer", data.retailer_id)
                totals = calculate_sales(cur, tenant_id, data, strict=True)
                invoice_no = _next_doc_no(cur, tenant_id, "SI")
                crate_op = plan_crate_op(
                    None,
                    data.crate_transaction,
                    requested_present=data.crate_transaction is not None,
                    party_type="retailer",
                    party_id=data.retailer_id,
                    default_type="Given",
                    invoice_date=data.invoice_date,
                    notes=_crate_notes(invoice_no),
                )

                cur.execute(
                    """
                    INSERT INTO sales_invoices
                      (id, tenant_id, invoice_no, retailer_id, invoice_date,
                       total_amount, paid_amount, balance_amount, shortfall_amount, status,
                       client_ref, created_by_user_id)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, COALESCE(%s, CURRENT_DATE),
                       %s, %s, %s, 0, %s,
                       %s, %s)
                    RETURNING id, invoice_date
                    """,
                    (
                        tenant_id,
                        invoice_no,
                        data.retailer_id,
                        data.invoice_date,
                        totals.total_amount,
                        totals.paid_amount,
                        totals.balance_amount,
                        totals.status,
                        data.client_ref,
                        user["user_id"],
                    ),
                )
                row = cur.fetchone()
                invoice_id = row["id"]
                _insert_lines(cur, tenant_id, invoice_id, totals.lines)

                if totals.paid_amount > 0:
                    # Money received at the counter is a payment like any other,
                    # so revert-status can rebuild paid_amount from payments.
                    cur.execute(
                        """
                        INSERT INTO sales_payments
                          (id, tenant_id, retailer_id, invoice_id, amount, payment_mode, payment_date, notes, created_by_user_id)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, 'cash', %s, %s, %s)
                        """,
                        (
                            tenant_id,
                            data.retailer_id,
                            invoice_id,
                            totals.paid_amount,
                            row["invoice_date"],
                            f"Paid with invoice {invoice_no}",
                            user["user_id"],
                        ),
                    )

                intent = plan_sales_create(data.retailer_id, totals, crate_op)
                applied = apply_write_intent(
                    cur,
                    tenant_id,
                    intent,
                    reference_type=REFERENCE_TYPE,
                    reference_id=invoice_id,
                    reference_number=invoice_no,
                    party_type="retailer",
                    party_id=data.retailer_id,
                    movement_date=row["invoice_date"],
                    lines=totals.lines,
                    invoice_column=INVOICE_COLUMN,
                )
                _audit(
                    cur,
                    tenant_id,
                    user["user_id"],
                    "sales_invoice_created",
                    invoice_id,
                    {"invoice_no": invoice_no, "retailer_id": data.retailer_id, "total_amount": totals.total_amount},
                )
                return {
                    "id": invoice_id,
                    "invoice_no": invoice_no,
                    **totals.to_dict(),
                    "shortfall_amount": ZERO,
                    "crate_transaction_id": applied["crate_transaction_id"],
                }


@router.patch("/{invoice_id}")
def update_sales_invoice(
    invoice_id: str,
    data: SalesInvoiceIn,
    tenant_id: str = Depends(get_tenant_id),
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                old = _lock_invoice(cur, tenant_id, invoice_id)
                if _d(old.get("shortfall_amount")) > 0:
                    raise ConsistencyError("invoice was marked paid with a shortfall; revert status before editing")
                if sales_entries_billed(cur, tenant_id, invoice_id):
                    raise ConsistencyError("invoice stock is already billed on a purchase invoice")
                old_lines = _load_lines(cur, tenant_id, invoice_id)
                require_party(cur, tenant_id, "retailer", data.retailer_id)
                if str(old["retailer_id"]) != str(data.retailer_id):
                    cur.execute(
                        "SELECT 1 FROM sales_payments WHERE tenant_id = %s AND invoice_id = %s LIMIT 1",
                        (tenant_id, invoice_id),
                    )
                    if cur.fetchone():
                        raise ConsistencyError("cannot move an invoice with payments to another retailer")

                # Payments are recorded separately; the edit form cannot rewrite them.
                paid = _d(old.get("paid_amount"))
                if data.paid_amount is not None:
                    requested = q2(parse_amount(data.paid_amount, field="paid_amount", strict=True))
                    if requested != paid:
                        raise InvoiceValidationError("paid_amount cannot be changed on edit; record a payment instead")
                totals = calculate_sales(cur, tenant_id, data, strict=True, paid_amount=paid)

                existing_crate = load_invoice_crate(cur, tenant_id, INVOICE_COLUMN, invoice_id)
                crate_op = plan_crate_op(
                    existing_crate,
                    data.crate_transaction,
                    requested_present="crate_transaction" in data.model_fields_set,
                    party_type="retailer",
                    party_id=data.retailer_id,
                    default_type="Given",
                    invoice_date=data.invoice_date or old["invoice_date"],
                    notes=_crate_notes(old["invoice_no"]),
                )

                cur.execute(
                    """
                    UPDATE sales_invoices
                    SET retailer_id = %s,
                        invoice_date = COALESCE(%s, invoice_date),
                        total_amount = %s,
                        balance_amount = %s,
                        status = %s,
                        updated_at = now()
                    WHERE tenant_id = %s AND id = %s
                    RETURNING invoice_date
                    """,
                    (
                        data.retailer_id,
                        data.invoice_date,
                        totals.total_amount,
                        totals.balance_amount,
                        totals.status,
                        tenant_id,
                        invoice_id,
                    ),
                )
                row = cur.fetchone()
                cur.execute(
                    "DELETE FROM sales_invoice_lines WHERE tenant_id = %s AND invoice_id = %s",
                    (tenant_id, invoice_id),
                )
                _insert_lines(cur, tenant_id, invoice_id, totals.lines)

                intent = plan_sales_edit(old, old_lines, data.retailer_id, totals, crate_op)
                applied = apply_write_intent(
                    cur,
                    tenant_id,
                    intent,
                    reference_type=REFERENCE_TYPE,
                    reference_id=invoice_id,
                    reference_number=old["invoice_no"],
                    party_type="retailer",
                    party_id=data.retailer_id,
                    movement_date=row["invoice_date"],
                    lines=totals.lines,
                    invoice_column=INVOICE_COLUMN,
                )
                _audit(
                    cur,
                    tenant_id,
                    user["user_id"],
                    "sales_invoice_updated",
                    invoice_id,
                    {
                        "old_total_amount": old.get("total_amount"),
                        "total_amount": totals.total_amount,
                        "old_retailer_id": old.get("retailer_id"),
                        "retailer_id": data.retailer_id,
                        "crate": crate_op.action,
                    },
                )
                crate_id = applied["crate_transaction_id"]
                if crate_id is None and existing_crate and crate_op.action != "delete":
                    crate_id = existing_crate["id"]
                return {
                    "id": invoice_id,
                    "invoice_no": old["invoice_no"],
                    **totals.to_dict(),
                    "shortfall_amount": ZERO,
                    "crate_transaction_id": crate_id,
                }


@router.delete("/{invoice_id}")
def delete_sales_invoice(invoice_id: str, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                old = _lock_invoice(cur, tenant_id, invoice_id)
                if sales_entries_billed(cur, tenant_id, invoice_id):
                    raise ConsistencyError("invoice stock is already billed on a purchase invoice")
                old_lines = _load_lines(cur, tenant_id, invoice_id)
                existing_crate = load_invoice_crate(cur, tenant_id, INVOICE_COLUMN, invoice_id)

                # Outstanding udhaar and any shortfall both go; payments go with the invoice.
                intent = plan_sales_delete(old, old_lines, existing_crate)
                apply_write_intent(
                    cur,
                    tenant_id,
                    intent,
                    reference_type=REFERENCE_TYPE,
                    reference_id=invoice_id,
                    reference_number=old["invoice_no"],
                    party_type="retailer",
                    party_id=old["retailer_id"],
                    lines=None,
                    invoice_column=INVOICE_COLUMN,
                )
                cur.execute(
                    "DELETE FROM sales_payments WHERE tenant_id = %s AND invoice_id = %s",
                    (tenant_id, invoice_id),
                )
                cur.execute(
                    "DELETE FROM sales_invoice_lines WHERE tenant_id = %s AND invoice_id = %s",
                    (tenant_id, invoice_id),
                )
                cur.execute(
                    "DELETE FROM sales_invoices WHERE tenant_id = %s AND id = %s",
                    (tenant_id, invoice_id),
                )
                _audit(
                    cur,
                    tenant_id,
                    user["user_id"],
                    "sales_invoice_deleted",
                    invoice_id,
                    {
                        "invoice_no": old["invoice_no"],
                        "retailer_id": old["retailer_id"],
                        "balance_amount": old["balance_amount"],
                        "shortfall_amount": old["shortfall_amount"],
                    },
                )
                return {"ok": True}


@router.post("/{invoice_id}/mark-paid")
def mark_sales_invoice_paid(invoice_id: str, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    """
    Close an underpaid invoice: whatever is still due moves from the
    retailer's udhaar into their shortfall balance.
    """
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                inv = _lock_invoice(cur, tenant_id, invoice_id)
                remaining = _d(inv.get("balance_amount"))
                if remaining <= 0:
                    raise ConsistencyError("invoice has no outstanding balance")

                paid = _d(inv.get("paid_amount"))
                shortfall = _d(inv.get("shortfall_amount")) + remaining
                status = _settled_status(paid, shortfall, _d(inv.get("total_amount")))
                lock_party(cur, tenant_id, "retailer", inv["retailer_id"])
                apply_party_delta(
                    cur,
                    tenant_id,
                    PartyDelta("retailer", str(inv["retailer_id"]), balance=-remaining, shortfall=remaining),
                )
                cur.execute(
                    """
                    UPDATE sales_invoices
                    SET balance_amount = 0,
                        shortfall_amount = %s,
                        status = %s,
                        updated_at = now()
                    WHERE tenant_id = %s AND id = %s
                    """,
                    (shortfall, status, tenant_id, invoice_id),
                )
                _audit(
                    cur,
                    tenant_id,
                    user["user_id"],
                    "sales_invoice_marked_paid",
                    invoice_id,
                    {"shortfall_added": remaining},
                )
                return {
                    "id": invoice_id,
                    "status": status,
                    "paid_amount": paid,
                    "balance_amount": ZERO,
                    "shortfall_amount": shortfall,
                    "shortfall_added": remaining,
                }


@router.post("/{invoice_id}/revert-status")
def revert_sales_invoice_status(invoice_id: str, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                inv = _lock_invoice(cur, tenant_id, invoice_id)
                shortfall = _d(inv.get("shortfall_amount"))
                if inv.get("status") != "Paid" or shortfall <= 0:
                    raise ConsistencyError("only invoices marked paid with a shortfall can be reverted")

                cur.execute(
                    "SELECT COALESCE(SUM(amount), 0) AS paid FROM sales_payments WHERE tenant_id = %s AND invoice_id = %s",
                    (tenant_id, invoice_id),
                )
                paid = _d((cur.fetchone() or {}).get("paid"))
                total = _d(inv.get("total_amount"))
                balance = max(ZERO, total - paid)
                status = derive_payment_status(paid, total, "sales")

                lock_party(cur, tenant_id, "retailer", inv["retailer_id"])
                apply_party_delta(
                    cur,
                    tenant_id,
                    PartyDelta("retailer", str(inv["retailer_id"]), balance=balance, shortfall=-shortfall),
                )
                cur.execute(
                    """
                    UPDATE sales_invoices
                    SET paid_amount = %s,
                        balance_amount = %s,
                        shortfall_amount = 0,
                        status = %s,
                        updated_at = now()
                    WHERE tenant_id = %s AND id = %s
                    """,
                    (paid, balance, status, tenant_id, invoice_id),
                )
                _audit(
                    cur,
                    tenant_id,
                    user["user_id"],
                    "sales_invoice_status_reverted",
                    invoice_id,
                    {"shortfall_removed": shortfall, "status": status},
                )
                return {
                    "id": invoice_id,
                    "status": status,
                    "paid_amount": paid,
                    "balance_amount": balance,
                    "shortfall_amount": ZERO,
                }
