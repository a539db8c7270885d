from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import json
import sys
import time
import uuid
from datetime import datetime, timezone
from .config import settings
from .db import get_admin_conn, close_pools
from .routers.auth import router as auth_router
from .routers.catalog import router as catalog_router
from .routers.customers import router as customers_router
from .routers.discounts import router as discounts_router
from .routers.loyalty import router as loyalty_router
from .routers.sales import router as sales_router
from .routers.held_orders import router as held_orders_router
from .routers.cash_sessions import router as cash_sessions_router
from .routers.kitchen import router as kitchen_router
from .routers.staff import router as staff_router
from .routers.terminals import router as terminals_router
from .routers.outbox import router as outbox_router

SERVICE_NAME = "merchant-pos-backend"
STARTED_AT_UTC = datetime.now(timezone.utc)

app = FastAPI(title="Merchant POS API", version=settings.api_version)

ROUTERS = (
    auth_router,
    catalog_router,
    customers_router,
    discounts_router,
    loyalty_router,
    sales_router,
    held_orders_router,
    cash_sessions_router,
    kitchen_router,
    staff_router,
    terminals_router,
    outbox_router,
)

# Postgres errors that come from bad client input rather than server faults.
PG_CLIENT_ERRORS = (
    (pg_errors.UniqueViolation, 409, "conflict"),
    (pg_errors.ForeignKeyViolation, 400, "invalid reference"),
    (pg_errors.CheckViolation, 400, "constraint violation"),
    (pg_errors.InvalidTextRepresentation, 400, "invalid value"),
    (pg_errors.NumericValueOutOfRange, 400, "value out of range"),
)


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def _debug_enabled() -> bool:
    return settings.env in {"local", "dev"}


def _request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _client_error_handler(status_code: int, detail: str):
    def _handler(_req: Request, exc: Exception):
        content = {"detail": detail}
        if _debug_enabled():
            content["error"] = str(exc)
        return JSONResponse(status_code=status_code, content=content)
    return _handler


for _exc_type, _status, _detail in PG_CLIENT_ERRORS:
    app.add_exception_handler(_exc_type, _client_error_handler(_status, _detail))


@app.exception_handler(RequestValidationError)
def _validation_failed(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if _debug_enabled() and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _internal_error(req: Request, exc: Exception):
    rid = _request_id(req)
    _json_log("error", "http.request.unhandled", request_id=rid, method=req.method, path=req.url.path, error=str(exc))
    content = {"detail": "internal error", "request_id": rid}
    if _debug_enabled():
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


@app.middleware("http")
async def _log_requests(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.monotonic()
    fields = {
        "request_id": rid,
        "method": request.method,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else None,
        # Tills identify themselves by terminal id; console calls by merchant id.
        "terminal_id": request.headers.get("X-Terminal-Id"),
        "merchant_id": request.headers.get("X-Merchant-Id"),
    }

    try:
        response = await call_next(request)
    except Exception as exc:
        _json_log("error", "http.request.error", duration_ms=int((time.monotonic() - started) * 1000), error=str(exc), **fields)
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if not fields["path"].startswith("/health"):
        _json_log(
            "info",
            "http.request",
            status_code=response.status_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            **fields,
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
for _router in ROUTERS:
    app.include_router(_router)


def _probe_db() -> tuple[bool, str | None]:
    try:
        with get_admin_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
    except Exception as exc:
        return False, str(exc)
    return True, None


@app.on_event("startup")
def _startup():
    ok, err = _probe_db()
    if ok:
        _json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        _json_log("warning", "startup.db_probe_failed", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pools()


def _health_response(req: Request, ok_status: str, *, check_db: bool, **extra):
    body = {
        "status": ok_status,
        "service": SERVICE_NAME,
        "env": settings.env,
        "version": settings.api_version,
        "request_id": _request_id(req),
        **extra,
    }
    if not check_db:
        return body
    ok, err = _probe_db()
    body["db"] = "ok" if ok else "down"
    if ok:
        return body
    body["status"] = "degraded"
    if _debug_enabled():
        body["error"] = err
    return JSONResponse(status_code=503, content=body)


@app.get("/health")
def health(req: Request):
    return _health_response(req, "ok", check_db=True, started_at=STARTED_AT_UTC.isoformat())


@app.get("/health/live")
def health_live(req: Request):
    return _health_response(req, "ok", check_db=False)


@app.get("/health/ready")
def health_ready(req: Request):
    return _health_response(req, "ready", check_db=True)


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "currency": settings.currency,
        "default_tax_rate": str(settings.default_tax_rate),
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
