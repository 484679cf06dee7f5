from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .validation import CrateTxnType, PaymentMode

# Numbers arrive as typed by the user; parsing (and the preview/submit policy
# for bad values) happens in invoice_calc, not here.
RawNumber = Optional[Union[Decimal, int, float, str]]


class InvoiceLineIn(BaseModel):
    item_id: Optional[str] = None
    weight: RawNumber = None
    crates: RawNumber = None
    boxes: RawNumber = None
    rate: RawNumber = None


class CrateTransactionIn(BaseModel):
    enabled: bool = True
    quantity: Optional[int] = None
    transaction_type: Optional[CrateTxnType] = None
    transaction_date: Optional[date] = None
    notes: Optional[str] = None


class PurchaseInvoiceIn(BaseModel):
    kind: Literal["purchase"] = "purchase"
    vendor_id: str
    invoice_date: Optional[date] = None
    lines: List[InvoiceLineIn] = Field(default_factory=list)
    # Percentage of total selling; omitted -> tenant default.
    commission_rate: RawNumber = None
    labour: RawNumber = None
    truck_freight: RawNumber = None
    crate_freight: RawNumber = None
    post_expenses: RawNumber = None
    draft_expenses: RawNumber = None
    vatav: RawNumber = None
    other_expenses: RawNumber = None
    advance: RawNumber = None
    # On edit: omitted -> keep as is, null -> remove, object -> create/update.
    crate_transaction: Optional[CrateTransactionIn] = None
    stock_out_entry_ids: Optional[List[str]] = None
    client_ref: Optional[str] = None


class SalesInvoiceIn(BaseModel):
    kind: Literal["sales"] = "sales"
    retailer_id: str
    invoice_date: Optional[date] = None
    lines: List[InvoiceLineIn] = Field(default_factory=list)
    paid_amount: RawNumber = None
    crate_transaction: Optional[CrateTransactionIn] = None
    client_ref: Optional[str] = None


InvoiceIn = Annotated[Union[PurchaseInvoiceIn, SalesInvoiceIn], Field(discriminator="kind")]


class InvoicePreviewIn(BaseModel):
    invoice: InvoiceIn


class VendorPaymentIn(BaseModel):
    vendor_id: str
    # Omitted -> distributed over the vendor's open invoices, oldest first.
    invoice_id: Optional[str] = None
    amount: RawNumber
    payment_mode: PaymentMode = "cash"
    payment_date: Optional[date] = None
    notes: Optional[str] = None


class SalesPaymentIn(BaseModel):
    retailer_id: str
    invoice_id: Optional[str] = None
    amount: RawNumber
    payment_mode: PaymentMode = "cash"
    payment_date: Optional[date] = None
    notes: Optional[str] = None


class StockAggregateIn(BaseModel):
    vendor_id: Optional[str] = None
    entry_ids: List[str] = Field(default_factory=list)
