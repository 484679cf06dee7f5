from fastapi import APIRouter, Depends, HTTPException
from dataclasses import asdict
from datetime import date
import json

from ..db import get_conn, set_tenant_context
from ..deps import get_tenant_id, get_current_user
from ..errors import ConsistencyError, InvoiceValidationError
from ..invoice_types import VendorPaymentIn
from ..ledger_store import apply_party_delta, lock_party, require_party
from ..money import ZERO
from ..payment_alloc import apply_payment_to_invoice, distribute_payment, parse_payment_amount
from ..reconcile import PartyDelta

router = APIRouter(prefix="/vendor-payments", tags=["vendor-payments"])


@router.post("")
def create_vendor_payment(data: VendorPaymentIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    amount = parse_payment_amount(data.amount)
    pay_date = data.payment_date or date.today()

    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                require_party(cur, tenant_id, "vendor", data.vendor_id)

                if data.invoice_id:
                    cur.execute(
                        """
                        SELECT id, vendor_id, invoice_no, net_amount, paid_amount, balance_amount, status
                        FROM purchase_invoices
                        WHERE tenant_id = %s AND id = %s
                        FOR UPDATE
                        """,
                        (tenant_id, data.invoice_id),
                    )
                    inv = cur.fetchone()
                    if not inv:
                        raise HTTPException(status_code=404, detail="invoice not found")
                    if str(inv["vendor_id"]) != str(data.vendor_id):
                        raise InvoiceValidationError("invoice_id: invoice belongs to another vendor")
                    if (inv.get("balance_amount") or 0) <= 0:
                        raise ConsistencyError("invoice is already fully paid")
                    allocations = [apply_payment_to_invoice(inv, amount, "purchase")]
                    remainder = amount - allocations[0].applied
                else:
                    cur.execute(
                        """
                        SELECT id, vendor_id, invoice_no, net_amount, paid_amount, balance_amount, status
                        FROM purchase_invoices
                        WHERE tenant_id = %s AND vendor_id = %s AND balance_amount > 0
                        ORDER BY invoice_date ASC, created_at ASC, id ASC
                        FOR UPDATE
                        """,
                        (tenant_id, data.vendor_id),
                    )
                    allocations, remainder = distribute_payment(cur.fetchall(), amount, "purchase")
                    if not allocations:
                        raise ConsistencyError("vendor has no open invoices")

                payment_ids = []
                for a in allocations:
                    cur.execute(
                        """
                        UPDATE purchase_invoices
                        SET paid_amount = %s,
                            balance_amount = %s,
                            status = %s,
                            updated_at = now()
                        WHERE tenant_id = %s AND id = %s
                        """,
                        (a.paid_amount, a.balance_amount, a.status, tenant_id, a.invoice_id),
                    )
                    cur.execute(
                        """
                        INSERT INTO vendor_payments
                          (id, tenant_id, vendor_id, invoice_id, amount, payment_mode, payment_date, notes, created_by_user_id)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING id
                        """,
                        (
                            tenant_id,
                            data.vendor_id,
                            a.invoice_id,
                            a.received,
                            data.payment_mode,
                            pay_date,
                            (data.notes or None),
                            user["user_id"],
                        ),
                    )
                    payment_ids.append(cur.fetchone()["id"])

                applied = sum((a.applied for a in allocations), ZERO)
                lock_party(cur, tenant_id, "vendor", data.vendor_id)
                apply_party_delta(cur, tenant_id, PartyDelta("vendor", str(data.vendor_id), balance=-applied))

                cur.execute(
                    """
                    INSERT INTO audit_logs (id, tenant_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'vendor_payment_created', 'vendor', %s, %s::jsonb)
                    """,
                    (
                        tenant_id,
                        user["user_id"],
                        data.vendor_id,
                        json.dumps({"amount": amount, "applied": applied, "payment_ids": payment_ids}, default=str),
                    ),
                )
                return {
                    "payment_ids": payment_ids,
                    "amount": amount,
                    "applied_amount": applied,
                    "unapplied_amount": remainder,
                    "allocations": [asdict(a) for a in allocations],
                }
