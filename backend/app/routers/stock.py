from fastapi import APIRouter, Depends, Query

from ..db import get_conn, set_tenant_context
from ..deps import get_tenant_id
from ..errors import InvoiceValidationError
from ..invoice_calc import aggregate_stock_out_entries
from ..invoice_types import StockAggregateIn
from ..ledger_store import get_available, list_available_stock_out_entries, require_party
from ..money import q2

router = APIRouter(prefix="/stock", tags=["stock"])


@router.get("/out-entries")
def list_stock_out_entries(vendor_id: str = Query(...), tenant_id: str = Depends(get_tenant_id)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            require_party(cur, tenant_id, "vendor", vendor_id)
            return {"entries": list_available_stock_out_entries(cur, tenant_id, vendor_id)}


@router.post("/aggregate")
def aggregate_stock_out(data: StockAggregateIn, tenant_id: str = Depends(get_tenant_id)):
    ids = sorted({x.strip() for x in data.entry_ids if x and x.strip()})
    if not ids:
        raise InvoiceValidationError("entry_ids is required")
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            if data.vendor_id:
                entries = list_available_stock_out_entries(cur, tenant_id, data.vendor_id, ids)
            else:
                cur.execute(
                    """
                    SELECT id, item_id, quantity_in_kgs, quantity_in_crates, quantity_in_boxes, rate, movement_date
                    FROM stock_movements
                    WHERE tenant_id = %s AND id = ANY(%s::uuid[]) AND movement_type = 'OUT'
                    ORDER BY movement_date DESC, id
                    """,
                    (tenant_id, ids),
                )
                entries = cur.fetchall()
                if len(entries) != len(ids):
                    raise InvoiceValidationError("entry_ids: unknown stock-out entry")
    lines = aggregate_stock_out_entries(entries)
    return {
        "lines": [
            {
                "item_id": ln.item_id,
                "weight": q2(ln.weight),
                "crates": q2(ln.crates),
                "boxes": q2(ln.boxes),
                "rate": ln.rate,
                "entry_ids": list(ln.entry_ids),
            }
            for ln in lines
        ]
    }


@router.get("/{item_id}")
def get_item_stock(item_id: str, tenant_id: str = Depends(get_tenant_id)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            return get_available(cur, tenant_id, item_id)
