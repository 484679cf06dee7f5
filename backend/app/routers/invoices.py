from fastapi import APIRouter, Depends

from ..db import get_conn, set_tenant_context
from ..deps import get_tenant_id
from ..invoice_types import InvoicePreviewIn
from .purchase_invoices import calculate_purchase
from .sales_invoices import calculate_sales

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post("/preview")
def preview_invoice(data: InvoicePreviewIn, tenant_id: str = Depends(get_tenant_id)):
    """
    Live totals for a form being edited. Unparsable numbers count as 0 (and
    are listed in `recovered_fields`); nothing is written.
    """
    inv = data.invoice
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            if inv.kind == "purchase":
                totals = calculate_purchase(cur, tenant_id, inv, strict=False)
            else:
                totals = calculate_sales(cur, tenant_id, inv, strict=False)
    return totals.to_dict()
