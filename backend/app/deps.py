import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException


def _uuid_or_400(raw: Optional[str], what: str) -> str:
    val = (raw or "").strip()
    if not val:
        raise HTTPException(status_code=400, detail=f"missing {what}")
    try:
        return str(uuid.UUID(val))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid {what}")


def get_tenant_id(x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id")) -> str:
    return _uuid_or_400(x_tenant_id, "tenant id")


def get_current_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> dict:
    # Authentication happens upstream; the gateway forwards the user id.
    return {"user_id": _uuid_or_400(x_user_id, "user id")}


def get_request_context(tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)) -> dict:
    return {"tenant_id": tenant_id, "user_id": user["user_id"]}
