"""
DentLedger API - FastAPI application entry point.
"""
from __future__ import annotations

import logging
import os
import sys
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from apps.api.authz import clinic_auth_enforcement_enabled
from packages.db.database import DATABASE_URL, init_db
from packages.shared.errors import (
    CalendarFetchError,
    DuplicateRow,
    InvalidIdentity,
    LedgerError,
    LockViolation,
    MonthlyCloseBlocked,
    PaymentBreakdownMismatch,
    PermissionDenied,
    PersistenceFailure,
    RecordNotFound,
    RowNotDeletable,
    TransactionConflict,
)


def _parse_csv_env(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return [value.strip() for value in raw.split(",") if value.strip()]


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("dentledger")

app = FastAPI(
    title="DentLedger API",
    description="Daily ledger reconciliation and patient identity for dental clinics",
    version="0.1.0",
)

cors_allow_origins = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
)
cors_allow_credentials = _parse_bool_env("CORS_ALLOW_CREDENTIALS", True)
audit_logging_enabled = _parse_bool_env("REQUEST_AUDIT_LOGGING", True)
allowed_hosts = _parse_csv_env("ALLOWED_HOSTS", ["*"])


def _validate_auth_runtime() -> None:
    """Fail fast on unsafe defaults when clinic auth enforcement is enabled."""
    if not clinic_auth_enforcement_enabled():
        return
    if "*" in cors_allow_origins:
        raise RuntimeError("CLINIC_AUTH_ENFORCEMENT=true does not allow wildcard CORS origins.")
    if len(os.getenv("API_INTERNAL_TOKEN", "").strip()) < 24:
        raise RuntimeError("CLINIC_AUTH_ENFORCEMENT=true requires API_INTERNAL_TOKEN >= 24 chars.")


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type", "X-User-Id", "X-User-Name", "X-User-Role",
        "X-Clinic-Ids", "X-Internal-Token", "X-Request-Id",
    ],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)


def _clinic_from_path(path: str) -> str:
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == "clinics":
        return parts[1]
    return "-"


@app.middleware("http")
async def request_audit_middleware(request: Request, call_next):
    started = time.perf_counter()
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    user_id = request.headers.get("X-User-Id", "anonymous")
    clinic_id = _clinic_from_path(request.url.path)

    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id

    if audit_logging_enabled:
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "request_audit request_id=%s method=%s path=%s status=%s duration_ms=%s user_id=%s clinic=%s",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            user_id,
            clinic_id,
        )

    return response


# Looked up along the exception's MRO.
_ERROR_STATUS: dict[type[LedgerError], int] = {
    InvalidIdentity: 400,
    PaymentBreakdownMismatch: 400,
    PermissionDenied: 403,
    RecordNotFound: 404,
    DuplicateRow: 409,
    RowNotDeletable: 409,
    MonthlyCloseBlocked: 409,
    LockViolation: 423,
    CalendarFetchError: 502,
    TransactionConflict: 503,
    PersistenceFailure: 503,
}


def _status_for(exc: LedgerError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 400


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    status = _status_for(exc)
    body: dict = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, LockViolation):
        body.update(clinic_id=exc.clinic_id, date=exc.date, fields=exc.fields)
    elif isinstance(exc, MonthlyCloseBlocked):
        body.update(month=exc.month, unlocked_dates=exc.unlocked_dates)
    elif isinstance(exc, (PersistenceFailure, RecordNotFound)):
        body.update(collection=exc.collection, key=exc.key)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content=body)


@app.on_event("startup")
def startup():
    """Initialize the document table on startup."""
    _validate_auth_runtime()
    logger.info("Initializing database...")
    init_db()
    logger.info("Database initialized (%s)", DATABASE_URL.split("://", 1)[0])


# Register routes
from apps.api.routes.clinics import router as clinics_router  # noqa: E402
from apps.api.routes.exports import router as exports_router  # noqa: E402
from apps.api.routes.ledgers import router as ledgers_router  # noqa: E402
from apps.api.routes.patients import router as patients_router  # noqa: E402
from apps.api.routes.prospects import router as prospects_router  # noqa: E402

app.include_router(clinics_router)
app.include_router(ledgers_router)
app.include_router(exports_router)
app.include_router(patients_router)
app.include_router(prospects_router)


@app.get("/health")
def health():
    return {"status": "ok", "version": "0.1.0"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("apps.api.main:app", host="0.0.0.0", port=8000, reload=True)
