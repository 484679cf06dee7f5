from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator

UNIT_KGS = "KGS"
UNIT_CRATE = "CRATE"
UNIT_BOX = "BOX"

_UNIT_ALIASES = {
    "KGS": UNIT_KGS,
    "KG": UNIT_KGS,
    "KILO": UNIT_KGS,
    "KILOS": UNIT_KGS,
    "CRATE": UNIT_CRATE,
    "CRATES": UNIT_CRATE,
    "BOX": UNIT_BOX,
    "BOXES": UNIT_BOX,
}


def normalize_unit(v) -> str:
    # Items without a recognizable unit are priced by weight.
    return _UNIT_ALIASES.get(str(v or "").strip().upper(), UNIT_KGS)


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _to_title_str(v):
    if v is None:
        return v
    return str(v).strip().title()


CrateTxnType = Annotated[Literal["Given", "Received"], BeforeValidator(_to_title_str)]
PaymentMode = Annotated[Literal["cash", "bank", "upi", "cheque"], BeforeValidator(_to_lower_str)]
