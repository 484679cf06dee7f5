from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .routers.invoices import router as invoices_router
from .routers.purchase_invoices import router as purchase_invoices_router
from .routers.sales_invoices import router as sales_invoices_router
from .routers.vendor_payments import router as vendor_payments_router
from .routers.sales_payments import router as sales_payments_router
from .routers.stock import router as stock_router
from .config import settings
from .deps import get_request_context
from .db import get_conn, close_pools, pool_stats
from .logs import json_log

SERVICE_NAME = "mandi-backend"
BOOTED_AT = datetime.now(timezone.utc)

app = FastAPI(title="Mandi Invoice API", version=settings.api_version)

# Database errors that reach the API layer mean the client sent something the
# schema refuses; answer with a 4xx instead of a 500.
PG_ERROR_RESPONSES = (
    (pg_errors.InvalidTextRepresentation, 400, "invalid value"),
    (pg_errors.ForeignKeyViolation, 400, "invalid reference"),
    (pg_errors.CheckViolation, 400, "constraint violation"),
    # Also how a replayed client_ref surfaces.
    (pg_errors.UniqueViolation, 409, "conflict"),
)


def _debug_enabled() -> bool:
    return settings.env in {"local", "dev"}


def _request_id(req: Request) -> str:
    rid = getattr(req.state, "request_id", "")
    return rid or req.headers.get("x-request-id") or "startup"


def _error_response(status_code: int, content: dict, exc: Exception) -> JSONResponse:
    if _debug_enabled():
        content["error"] = str(exc)
    return JSONResponse(status_code=status_code, content=content)


def _pg_handler(status_code: int, detail: str):
    def handler(_req: Request, exc: Exception):
        return _error_response(status_code, {"detail": detail}, exc)

    return handler


for _exc_type, _status, _detail in PG_ERROR_RESPONSES:
    app.add_exception_handler(_exc_type, _pg_handler(_status, _detail))


@app.exception_handler(RequestValidationError)
def _on_request_validation(_req: Request, exc: RequestValidationError):
    body = {"detail": "validation failed"}
    if _debug_enabled():
        body["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=body)


@app.exception_handler(Exception)
def _on_unhandled(req: Request, exc: Exception):
    rid = _request_id(req)
    json_log("error", "http.request.unhandled", request_id=rid, method=req.method, path=req.url.path, error=str(exc))
    return _error_response(500, {"detail": "internal error", "request_id": rid}, exc)


def _log_request(event: str, level: str, request: Request, started: float, **fields):
    json_log(
        level,
        event,
        request_id=request.state.request_id,
        method=request.method,
        path=request.url.path,
        tenant_id=request.headers.get("X-Tenant-Id"),
        duration_ms=int((time.time() - started) * 1000),
        **fields,
    )


@app.middleware("http")
async def _request_context(request: Request, call_next):
    request.state.request_id = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    started = time.time()
    try:
        response = await call_next(request)
    except Exception as exc:
        _log_request("http.request.error", "error", request, started, error=str(exc))
        raise

    response.headers["X-Request-Id"] = request.state.request_id
    response.headers["X-Content-Type-Options"] = "nosniff"
    if not request.url.path.startswith("/health"):
        _log_request("http.request", "info", request, started, status_code=response.status_code)
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for _router in (
    invoices_router,
    purchase_invoices_router,
    sales_invoices_router,
    vendor_payments_router,
    sales_payments_router,
    stock_router,
):
    app.include_router(_router, dependencies=[Depends(get_request_context)])


@app.on_event("shutdown")
def _close_db():
    close_pools()


def _check_database() -> tuple[bool, str]:
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT count(*) AS n FROM document_sequences")
                cur.fetchone()
    except Exception as exc:
        return False, str(exc)
    return True, ""


@app.get("/health")
def health(req: Request):
    """Readiness: the database answers and the invoice schema is in place."""
    db_ok, db_error = _check_database()
    body = {
        "status": "ok" if db_ok else "degraded",
        "service": SERVICE_NAME,
        "env": settings.env,
        "version": settings.api_version,
        "booted_at": BOOTED_AT.isoformat(),
        "db": "ok" if db_ok else "down",
        "pool": pool_stats(),
        "request_id": _request_id(req),
    }
    if db_ok:
        return body
    if _debug_enabled():
        body["error"] = db_error
    return JSONResponse(status_code=503, content=body)


@app.get("/health/live")
def health_live(req: Request):
    return {"status": "ok", "service": SERVICE_NAME, "env": settings.env, "request_id": _request_id(req)}
