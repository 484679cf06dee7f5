from fastapi import APIRouter, Depends, HTTPException
from decimal import Decimal
from typing import Optional
import json

from ..db import get_conn, set_tenant_context
from ..deps import get_tenant_id, get_current_user
from ..errors import ConsistencyError
from ..invoice_calc import PurchaseTotals, aggregate_stock_out_entries, compute_purchase_totals
from ..invoice_types import PurchaseInvoiceIn
from ..ledger_store import (
    apply_write_intent,
    link_stock_out_entries,
    list_available_stock_out_entries,
    load_invoice_crate,
    load_item_units,
    release_stock_out_entries,
    require_party,
)
from ..money import ZERO, fmt2
from ..reconcile import plan_crate_op, plan_purchase_create, plan_purchase_delete, plan_purchase_edit
from ..tenant_settings import tenant_settings

router = APIRouter(prefix="/purchase-invoices", tags=["purchase-invoices"])

REFERENCE_TYPE = "PURCHASE_INVOICE"
INVOICE_COLUMN = "purchase_invoice_id"

_INVOICE_COLS = """
    id, invoice_no, vendor_id, invoice_date,
    commission_rate, commission_amount,
    labour, truck_freight, crate_freight, post_expenses, draft_expenses, vatav, other_expenses, advance,
    total_selling, total_expense, net_amount, paid_amount, balance_amount, status,
    client_ref, created_at, updated_at
"""


def _next_doc_no(cur, tenant_id: str, doc_type: str) -> str:
    cur.execute("SELECT next_document_no(%s, %s) AS doc_no", (tenant_id, doc_type))
    return cur.fetchone()["doc_no"]


def _lock_invoice(cur, tenant_id: str, invoice_id: str) -> dict:
    cur.execute(
        f"""
        SELECT {_INVOICE_COLS}
        FROM purchase_invoices
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
        FROM purchase_invoice_lines l
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
            INSERT INTO purchase_invoice_lines
              (id, tenant_id, invoice_id, line_no, item_id, unit, weight, crates, boxes, rate, amount)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (tenant_id, invoice_id, idx, ln.item_id, ln.unit, ln.weight, ln.crates, ln.boxes, ln.rate, ln.amount),
        )


def _resolve_lines(cur, tenant_id: str, data: PurchaseInvoiceIn) -> PurchaseInvoiceIn:
    """Lines built from stock-out entries are always re-aggregated server side."""
    if data.stock_out_entry_ids is None:
        return data
    entries = list_available_stock_out_entries(cur, tenant_id, data.vendor_id, data.stock_out_entry_ids)
    lines = [agg.to_line_in() for agg in aggregate_stock_out_entries(entries)]
    return data.model_copy(update={"lines": lines})


def _has_linked_entries(cur, tenant_id: str, invoice_id: str) -> bool:
    cur.execute(
        "SELECT 1 FROM stock_movements WHERE tenant_id = %s AND purchase_invoice_id = %s LIMIT 1",
        (tenant_id, invoice_id),
    )
    return cur.fetchone() is not None


def calculate_purchase(cur, tenant_id: str, data: PurchaseInvoiceIn, *, strict: bool = True, paid_amount=None) -> PurchaseTotals:
    units = load_item_units(cur, tenant_id, [ln.item_id for ln in data.lines], strict=strict)
    default_rate = None
    if data.commission_rate is None:
        default_rate = tenant_settings.commission_rate(cur, tenant_id)
    return compute_purchase_totals(
        data,
        units,
        strict=strict,
        paid_amount=paid_amount,
        default_commission_rate=default_rate,
    )


def _crate_notes(invoice_no: Optional[str]) -> str:
    return f"Crates with purchase invoice {invoice_no}" if invoice_no else "Crates with purchase invoice"


def _audit(cur, tenant_id: str, user_id: str, action: str, invoice_id: str, details: dict):
    cur.execute(
        """
        INSERT INTO audit_logs (id, tenant_id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, 'purchase_invoice', %s, %s::jsonb)
        """,
        (tenant_id, user_id, action, invoice_id, json.dumps(details, default=str)),
    )


@router.get("/{invoice_id}")
def get_purchase_invoice(invoice_id: str, tenant_id: str = Depends(get_tenant_id)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_INVOICE_COLS}
                FROM purchase_invoices
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
                FROM vendor_payments
                WHERE tenant_id = %s AND invoice_id = %s
                ORDER BY payment_date ASC, created_at ASC
                """,
                (tenant_id, invoice_id),
            )
            payments = cur.fetchall()
            cur.execute(
                """
                SELECT id
                FROM stock_movements
                WHERE tenant_id = %s AND purchase_invoice_id = %s
                ORDER BY id
                """,
                (tenant_id, invoice_id),
            )
            entry_ids = [str(r["id"]) for r in cur.fetchall()]
            return {
                "invoice": inv,
                "lines": lines,
                "crate_transaction": crate,
                "payments": payments,
                "stock_out_entry_ids": entry_ids,
            }


@router.post("")
def create_purchase_invoice(data: PurchaseInvoiceIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                # Everything is validated and calculated before the first write.
                require_party(cur, tenant_id, "vendor", data.vendor_id)
                data = _resolve_lines(cur, tenant_id, data)
                totals = calculate_purchase(cur, tenant_id, data, strict=True, paid_amount=ZERO)
                invoice_no = _next_doc_no(cur, tenant_id, "PI")
                crate_op = plan_crate_op(
                    None,
                    data.crate_transaction,
                    requested_present=data.crate_transaction is not None,
                    party_type="vendor",
                    party_id=data.vendor_id,
                    default_type="Received",
                    invoice_date=data.invoice_date,
                    notes=_crate_notes(invoice_no),
                )

                cur.execute(
                    """
                    INSERT INTO purchase_invoices
                      (id, tenant_id, invoice_no, vendor_id, invoice_date,
                       commission_rate, commission_amount,
                       labour, truck_freight, crate_freight, post_expenses, draft_expenses, vatav, other_expenses, advance,
                       total_selling, total_expense, net_amount, paid_amount, balance_amount, status,
                       client_ref, created_by_user_id)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, COALESCE(%s, CURRENT_DATE),
                       %s, %s,
                       %s, %s, %s, %s, %s, %s, %s, %s,
                       %s, %s, %s, %s, %s, %s,
                       %s, %s)
                    RETURNING id, invoice_date
                    """,
                    (
                        tenant_id,
                        invoice_no,
                        data.vendor_id,
                        data.invoice_date,
                        totals.commission_rate,
                        totals.commission_amount,
                        *(totals.expenses[name] for name in totals.expenses),
                        totals.total_selling,
                        totals.total_expense,
                        totals.net_amount,
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

                intent = plan_purchase_create(data.vendor_id, totals, crate_op)
                applied = apply_write_intent(
                    cur,
                    tenant_id,
                    intent,
                    reference_type=REFERENCE_TYPE,
                    reference_id=invoice_id,
                    reference_number=invoice_no,
                    party_type="vendor",
                    party_id=data.vendor_id,
                    movement_date=row["invoice_date"],
                    lines=totals.lines,
                    invoice_column=INVOICE_COLUMN,
                )
                if data.stock_out_entry_ids:
                    link_stock_out_entries(cur, tenant_id, data.stock_out_entry_ids, invoice_id)

                _audit(
                    cur,
                    tenant_id,
                    user["user_id"],
                    "purchase_invoice_created",
                    invoice_id,
                    {"invoice_no": invoice_no, "vendor_id": data.vendor_id, "net_amount": totals.net_amount},
                )
                return {
                    "id": invoice_id,
                    "invoice_no": invoice_no,
                    **totals.to_dict(),
                    "crate_transaction_id": applied["crate_transaction_id"],
                }


@router.patch("/{invoice_id}")
def update_purchase_invoice(
    invoice_id: str,
    data: PurchaseInvoiceIn,
    tenant_id: str = Depends(get_tenant_id),
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                old = _lock_invoice(cur, tenant_id, invoice_id)
                old_lines = _load_lines(cur, tenant_id, invoice_id)
                require_party(cur, tenant_id, "vendor", data.vendor_id)

                vendor_changed = str(old["vendor_id"]) != str(data.vendor_id)
                if vendor_changed:
                    cur.execute(
                        "SELECT 1 FROM vendor_payments WHERE tenant_id = %s AND invoice_id = %s LIMIT 1",
                        (tenant_id, invoice_id),
                    )
                    if cur.fetchone():
                        raise ConsistencyError("cannot move an invoice with payments to another vendor")
                    if data.stock_out_entry_ids is None and _has_linked_entries(cur, tenant_id, invoice_id):
                        raise ConsistencyError(
                            "invoice is built from stock-out entries; send stock_out_entry_ids for the new vendor"
                        )
                if data.stock_out_entry_ids is not None or vendor_changed:
                    # Entries billed on this invoice become selectable again before re-linking.
                    release_stock_out_entries(cur, tenant_id, invoice_id)
                data = _resolve_lines(cur, tenant_id, data)

                paid = Decimal(str(old.get("paid_amount") or 0))
                totals = calculate_purchase(cur, tenant_id, data, strict=True, paid_amount=paid)
                if totals.net_amount < paid:
                    raise ConsistencyError(
                        f"net_amount {fmt2(totals.net_amount)} is below the {fmt2(paid)} already paid on this invoice"
                    )

                existing_crate = load_invoice_crate(cur, tenant_id, INVOICE_COLUMN, invoice_id)
                crate_op = plan_crate_op(
                    existing_crate,
                    data.crate_transaction,
                    requested_present="crate_transaction" in data.model_fields_set,
                    party_type="vendor",
                    party_id=data.vendor_id,
                    default_type="Received",
                    invoice_date=data.invoice_date or old["invoice_date"],
                    notes=_crate_notes(old["invoice_no"]),
                )

                cur.execute(
                    """
                    UPDATE purchase_invoices
                    SET vendor_id = %s,
                        invoice_date = COALESCE(%s, invoice_date),
                        commission_rate = %s,
                        commission_amount = %s,
                        labour = %s,
                        truck_freight = %s,
                        crate_freight = %s,
                        post_expenses = %s,
                        draft_expenses = %s,
                        vatav = %s,
                        other_expenses = %s,
                        advance = %s,
                        total_selling = %s,
                        total_expense = %s,
                        net_amount = %s,
                        balance_amount = %s,
                        status = %s,
                        updated_at = now()
                    WHERE tenant_id = %s AND id = %s
                    RETURNING invoice_date
                    """,
                    (
                        data.vendor_id,
                        data.invoice_date,
                        totals.commission_rate,
                        totals.commission_amount,
                        *(totals.expenses[name] for name in totals.expenses),
                        totals.total_selling,
                        totals.total_expense,
                        totals.net_amount,
                        totals.balance_amount,
                        totals.status,
                        tenant_id,
                        invoice_id,
                    ),
                )
                row = cur.fetchone()
                cur.execute(
                    "DELETE FROM purchase_invoice_lines WHERE tenant_id = %s AND invoice_id = %s",
                    (tenant_id, invoice_id),
                )
                _insert_lines(cur, tenant_id, invoice_id, totals.lines)

                intent = plan_purchase_edit(old, old_lines, data.vendor_id, totals, crate_op)
                applied = apply_write_intent(
                    cur,
                    tenant_id,
                    intent,
                    reference_type=REFERENCE_TYPE,
                    reference_id=invoice_id,
                    reference_number=old["invoice_no"],
                    party_type="vendor",
                    party_id=data.vendor_id,
                    movement_date=row["invoice_date"],
                    lines=totals.lines,
                    invoice_column=INVOICE_COLUMN,
                )
                if data.stock_out_entry_ids:
                    link_stock_out_entries(cur, tenant_id, data.stock_out_entry_ids, invoice_id)

                _audit(
                    cur,
                    tenant_id,
                    user["user_id"],
                    "purchase_invoice_updated",
                    invoice_id,
                    {
                        "old_net_amount": old.get("net_amount"),
                        "net_amount": totals.net_amount,
                        "old_vendor_id": old.get("vendor_id"),
                        "vendor_id": data.vendor_id,
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
                    "crate_transaction_id": crate_id,
                }


@router.delete("/{invoice_id}")
def delete_purchase_invoice(invoice_id: str, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                old = _lock_invoice(cur, tenant_id, invoice_id)
                cur.execute(
                    "SELECT 1 FROM vendor_payments WHERE tenant_id = %s AND invoice_id = %s LIMIT 1",
                    (tenant_id, invoice_id),
                )
                if cur.fetchone():
                    raise ConsistencyError("cannot delete an invoice with payments")

                old_lines = _load_lines(cur, tenant_id, invoice_id)
                existing_crate = load_invoice_crate(cur, tenant_id, INVOICE_COLUMN, invoice_id)
                intent = plan_purchase_delete(old, old_lines, existing_crate)
                apply_write_intent(
                    cur,
                    tenant_id,
                    intent,
                    reference_type=REFERENCE_TYPE,
                    reference_id=invoice_id,
                    reference_number=old["invoice_no"],
                    party_type="vendor",
                    party_id=old["vendor_id"],
                    lines=None,
                    invoice_column=INVOICE_COLUMN,
                )
                release_stock_out_entries(cur, tenant_id, invoice_id)
                cur.execute(
                    "DELETE FROM purchase_invoice_lines WHERE tenant_id = %s AND invoice_id = %s",
                    (tenant_id, invoice_id),
                )
                cur.execute(
                    "DELETE FROM purchase_invoices WHERE tenant_id = %s AND id = %s",
                    (tenant_id, invoice_id),
                )
                _audit(
                    cur,
                    tenant_id,
                    user["user_id"],
                    "purchase_invoice_deleted",
                    invoice_id,
                    {"invoice_no": old["invoice_no"], "vendor_id": old["vendor_id"], "balance_amount": old["balance_amount"]},
                )
                return {"ok": True}
