from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from fastapi import HTTPException

from .errors import ConsistencyError, InvoiceValidationError
from .logs import json_log
from .money import q2
from .reconcile import CRATE_CREATE, CRATE_DELETE, CRATE_UPDATE, CrateOp, PartyDelta, StockDelta, WriteIntent
from .validation import normalize_unit

# party_type -> (table, balance column, shortfall column)
PARTY_TABLES = {
    "vendor": ("vendors", "balance", None),
    "retailer": ("retailers", "udhaar_balance", "shortfall_balance"),
}


def _is_uuid(raw: str) -> bool:
    try:
        uuid.UUID(raw)
    except ValueError:
        return False
    return True


def load_item_units(cur, tenant_id: str, item_ids: Iterable, *, strict: bool = True) -> dict:
    ids = sorted({str(x).strip() for x in (item_ids or []) if x and str(x).strip()})
    if not strict:
        # A half-typed id in a form being edited is just an unknown item.
        ids = [x for x in ids if _is_uuid(x)]
    if not ids:
        return {}
    cur.execute(
        """
        SELECT id, unit
        FROM items
        WHERE tenant_id = %s AND id = ANY(%s::uuid[])
        """,
        (tenant_id, ids),
    )
    return {str(r["id"]): normalize_unit(r.get("unit")) for r in (cur.fetchall() or [])}


def get_available(cur, tenant_id: str, item_id: str) -> dict:
    cur.execute(
        """
        SELECT quantity_in_kgs, quantity_in_crates, quantity_in_boxes
        FROM stock
        WHERE tenant_id = %s AND item_id = %s
        """,
        (tenant_id, item_id),
    )
    row = cur.fetchone() or {}
    return {
        "item_id": item_id,
        "kgs": Decimal(str(row.get("quantity_in_kgs") or 0)),
        "crates": Decimal(str(row.get("quantity_in_crates") or 0)),
        "boxes": Decimal(str(row.get("quantity_in_boxes") or 0)),
    }


def require_party(cur, tenant_id: str, party_type: str, party_id: str):
    table = PARTY_TABLES[party_type][0]
    cur.execute(f"SELECT 1 FROM {table} WHERE tenant_id = %s AND id = %s", (tenant_id, party_id))
    if not cur.fetchone():
        raise HTTPException(status_code=404, detail=f"{party_type} not found")


def lock_party(cur, tenant_id: str, party_type: str, party_id: str) -> dict:
    table, balance_col, shortfall_col = PARTY_TABLES[party_type]
    cols = f"id, {balance_col}" + (f", {shortfall_col}" if shortfall_col else "")
    cur.execute(
        f"""
        SELECT {cols}
        FROM {table}
        WHERE tenant_id = %s AND id = %s
        FOR UPDATE
        """,
        (tenant_id, party_id),
    )
    row = cur.fetchone()
    if not row:
        raise ConsistencyError(f"{party_type} {party_id} not found")
    return row


def apply_party_delta(cur, tenant_id: str, delta: PartyDelta):
    table, balance_col, shortfall_col = PARTY_TABLES[delta.party_type]
    if delta.party_type == "vendor":
        # Payable may legitimately go negative (advance paid to vendor).
        cur.execute(
            f"UPDATE {table} SET {balance_col} = {balance_col} + %s WHERE tenant_id = %s AND id = %s",
            (delta.balance, tenant_id, delta.party_id),
        )
    else:
        cur.execute(
            f"""
            UPDATE {table}
            SET {balance_col} = GREATEST({balance_col} + %s, 0),
                {shortfall_col} = GREATEST({shortfall_col} + %s, 0)
            WHERE tenant_id = %s AND id = %s
            """,
            (delta.balance, delta.shortfall, tenant_id, delta.party_id),
        )
    if cur.rowcount != 1:
        raise ConsistencyError(f"{delta.party_type} {delta.party_id}: balance update failed")


def apply_stock_delta(cur, tenant_id: str, delta: StockDelta):
    cur.execute(
        """
        INSERT INTO stock (id, tenant_id, item_id, quantity_in_kgs, quantity_in_crates, quantity_in_boxes)
        VALUES (gen_random_uuid(), %s, %s, 0, 0, 0)
        ON CONFLICT (tenant_id, item_id) DO NOTHING
        """,
        (tenant_id, delta.item_id),
    )
    cur.execute(
        """
        UPDATE stock
        SET quantity_in_kgs = quantity_in_kgs + %s,
            quantity_in_crates = quantity_in_crates + %s,
            quantity_in_boxes = quantity_in_boxes + %s,
            updated_at = now()
        WHERE tenant_id = %s AND item_id = %s
        """,
        (delta.kgs, delta.crates, delta.boxes, tenant_id, delta.item_id),
    )
    if cur.rowcount != 1:
        raise ConsistencyError(f"stock update failed for item_id={delta.item_id}")


def replace_stock_movements(
    cur,
    tenant_id: str,
    *,
    movement_type: str,
    reference_type: str,
    reference_id: str,
    reference_number: Optional[str],
    party_type: str,
    party_id: Optional[str],
    movement_date: Optional[date],
    lines: Optional[Iterable],
):
    """Movements mirror the invoice's current lines; old ones are dropped first."""
    cur.execute(
        "DELETE FROM stock_movements WHERE tenant_id = %s AND reference_type = %s AND reference_id = %s",
        (tenant_id, reference_type, reference_id),
    )
    vendor_id = party_id if party_type == "vendor" else None
    retailer_id = party_id if party_type == "retailer" else None
    for ln in lines or []:
        cur.execute(
            """
            INSERT INTO stock_movements
              (id, tenant_id, item_id, movement_type, quantity_in_kgs, quantity_in_crates, quantity_in_boxes,
               rate, reference_type, reference_id, reference_number, vendor_id, retailer_id, movement_date, notes)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s,
               %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                tenant_id,
                ln.item_id,
                movement_type,
                q2(ln.weight),
                q2(ln.crates),
                q2(ln.boxes),
                q2(ln.rate),
                reference_type,
                reference_id,
                reference_number,
                vendor_id,
                retailer_id,
                movement_date or date.today(),
                f"Auto-generated from {reference_type.lower().replace('_', ' ')}",
            ),
        )


def apply_crate_op(cur, tenant_id: str, op: CrateOp, *, invoice_column: str, invoice_id: str) -> Optional[str]:
    if op.action == CRATE_CREATE:
        cur.execute(
            f"""
            INSERT INTO crate_transactions
              (id, tenant_id, party_type, party_id, transaction_type, quantity, transaction_date, notes, {invoice_column})
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                tenant_id,
                op.party_type,
                op.party_id,
                op.transaction_type,
                op.quantity,
                op.transaction_date or date.today(),
                op.notes,
                invoice_id,
            ),
        )
        return cur.fetchone()["id"]
    if op.action == CRATE_UPDATE:
        cur.execute(
            """
            UPDATE crate_transactions
            SET party_type = %s,
                party_id = %s,
                transaction_type = %s,
                quantity = %s,
                transaction_date = %s,
                notes = %s
            WHERE tenant_id = %s AND id = %s
            """,
            (
                op.party_type,
                op.party_id,
                op.transaction_type,
                op.quantity,
                op.transaction_date or date.today(),
                op.notes,
                tenant_id,
                op.crate_id,
            ),
        )
        if cur.rowcount != 1:
            raise ConsistencyError(f"crate transaction {op.crate_id} not found")
        return op.crate_id
    if op.action == CRATE_DELETE:
        cur.execute(
            "DELETE FROM crate_transactions WHERE tenant_id = %s AND id = %s",
            (tenant_id, op.crate_id),
        )
        if cur.rowcount != 1:
            raise ConsistencyError(f"crate transaction {op.crate_id} not found")
        return None
    return None


def load_invoice_crate(cur, tenant_id: str, invoice_column: str, invoice_id: str) -> Optional[dict]:
    cur.execute(
        f"""
        SELECT id, party_type, party_id, transaction_type, quantity, transaction_date, notes
        FROM crate_transactions
        WHERE tenant_id = %s AND {invoice_column} = %s
        LIMIT 1
        """,
        (tenant_id, invoice_id),
    )
    return cur.fetchone()


def apply_write_intent(
    cur,
    tenant_id: str,
    intent: WriteIntent,
    *,
    reference_type: str,
    reference_id: str,
    reference_number: Optional[str] = None,
    party_type: str,
    party_id: Optional[str] = None,
    movement_date: Optional[date] = None,
    lines: Optional[Iterable] = None,
    invoice_column: str,
) -> dict:
    """
    Apply balance, stock and crate changes for one invoice write.

    Must run inside the caller's transaction: any ConsistencyError raised here
    aborts the whole write, invoice row included.
    """
    # Lock order: parties, then stock rows (already sorted by item id).
    deltas = sorted(intent.party_deltas, key=lambda d: (d.party_type, d.party_id))
    for d in deltas:
        lock_party(cur, tenant_id, d.party_type, d.party_id)
    for d in deltas:
        apply_party_delta(cur, tenant_id, d)

    for s in intent.stock_deltas:
        apply_stock_delta(cur, tenant_id, s)

    replace_stock_movements(
        cur,
        tenant_id,
        movement_type=intent.movement_type,
        reference_type=reference_type,
        reference_id=reference_id,
        reference_number=reference_number,
        party_type=party_type,
        party_id=party_id,
        movement_date=movement_date,
        lines=lines,
    )

    crate_id = apply_crate_op(cur, tenant_id, intent.crate_op, invoice_column=invoice_column, invoice_id=reference_id)

    json_log(
        "info",
        "invoice.reconciled",
        tenant_id=tenant_id,
        reference_type=reference_type,
        reference_id=reference_id,
        **intent.summary(),
    )
    return {"crate_transaction_id": crate_id}


# Stock-out entries: OUT movements written by sales invoices for items owned by
# a vendor. Each one can be billed to the vendor on exactly one purchase invoice.

def list_available_stock_out_entries(cur, tenant_id: str, vendor_id: str, entry_ids: Optional[Iterable] = None) -> list:
    ids = sorted({str(x).strip() for x in (entry_ids or []) if x and str(x).strip()})
    sql = """
        SELECT m.id, m.item_id, i.name AS item_name, i.unit,
               m.quantity_in_kgs, m.quantity_in_crates, m.quantity_in_boxes,
               m.rate, m.movement_date, m.reference_number
        FROM stock_movements m
        JOIN items i
          ON i.tenant_id = m.tenant_id AND i.id = m.item_id
        WHERE m.tenant_id = %s
          AND i.vendor_id = %s
          AND m.movement_type = 'OUT'
          AND m.reference_type = 'SALES_INVOICE'
          AND m.purchase_invoice_id IS NULL
    """
    params: list = [tenant_id, vendor_id]
    if entry_ids is not None:
        sql += " AND m.id = ANY(%s::uuid[])"
        params.append(ids)
    sql += " ORDER BY m.movement_date DESC, m.id"
    cur.execute(sql, tuple(params))
    rows = cur.fetchall() or []
    if entry_ids is not None and len(rows) != len(ids):
        found = {str(r["id"]) for r in rows}
        missing = [x for x in ids if x not in found]
        raise InvoiceValidationError(f"stock_out_entry_ids: not available for this vendor: {', '.join(missing)}")
    return rows


def link_stock_out_entries(cur, tenant_id: str, entry_ids: Iterable, purchase_invoice_id: str):
    ids = sorted({str(x) for x in entry_ids})
    if not ids:
        return
    cur.execute(
        """
        UPDATE stock_movements
        SET purchase_invoice_id = %s
        WHERE tenant_id = %s AND id = ANY(%s::uuid[]) AND purchase_invoice_id IS NULL
        """,
        (purchase_invoice_id, tenant_id, ids),
    )
    if cur.rowcount != len(ids):
        raise ConsistencyError("stock_out_entry_ids: entry already billed on another purchase invoice")


def release_stock_out_entries(cur, tenant_id: str, purchase_invoice_id: str):
    cur.execute(
        "UPDATE stock_movements SET purchase_invoice_id = NULL WHERE tenant_id = %s AND purchase_invoice_id = %s",
        (tenant_id, purchase_invoice_id),
    )


def sales_entries_billed(cur, tenant_id: str, sales_invoice_id: str) -> bool:
    cur.execute(
        """
        SELECT 1
        FROM stock_movements
        WHERE tenant_id = %s AND reference_type = 'SALES_INVOICE' AND reference_id = %s
          AND purchase_invoice_id IS NOT NULL
        LIMIT 1
        """,
        (tenant_id, sales_invoice_id),
    )
    return cur.fetchone() is not None
