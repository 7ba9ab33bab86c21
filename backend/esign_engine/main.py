"""
Envelope Signing Engine — FastAPI Application Entry Point

Aggregates all routers, configures middleware and logging, maps engine
errors to HTTP responses, and initializes the database on startup.
"""
import logging
import os
import time
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from esign_engine.config import get_settings
from esign_engine.database import init_db
from esign_engine.exceptions import ErrorKind, SigningError
from esign_engine.routes import admin_router, envelopes_router, signing_router

settings = get_settings()
logger = logging.getLogger("esign_engine")


def configure_logging():
    """Console + server.log in LOG_DIR."""
    os.makedirs(settings.LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    root = logging.getLogger("esign_engine")
    root.setLevel(settings.LOG_LEVEL)
    if not root.handlers:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        file_handler = logging.FileHandler(os.path.join(settings.LOG_DIR, "server.log"), encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(console)
        root.addHandler(file_handler)


# ─── Application Instance ───────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Envelope signing workflow engine. Drives self-service, agent-assisted "
        "and physical print-sign-scan signing through identity verification, "
        "consent capture, OTP confirmation and trust-service finalization, "
        "with a hash-chained audit trail."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

# ─── Startup ─────────────────────────────────────────────────────────
BOOT_TIME = time.time()


@app.on_event("startup")
def on_startup():
    """Initialize logging and database tables, log boot info."""
    configure_logging()
    init_db()

    logger.info(
        "%s v%s | time=%s | gemini=%s | trust=%s | delivery=%s | db=%s | debug=%s",
        settings.APP_NAME,
        settings.APP_VERSION,
        datetime.now().isoformat(),
        "loaded" if settings.GEMINI_API_KEY else "missing",
        settings.TRUST_SERVICE_URL or "local",
        "brevo" if settings.BREVO_API_KEY else "console",
        settings.DATABASE_URL,
        settings.DEBUG,
    )


# ─── Error Mapping ───────────────────────────────────────────────────
STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ACTOR_NOT_PERMITTED: 403,
    ErrorKind.SESSION_BUSY: 409,
    ErrorKind.SESSION_ALREADY_ACTIVE: 409,
    ErrorKind.SESSION_CLOSED: 409,
    ErrorKind.ALREADY_VERIFIED: 409,
    ErrorKind.SESSION_EXPIRED: 410,
    ErrorKind.COOLDOWN_ACTIVE: 429,
    ErrorKind.PROVIDER_UNAVAILABLE: 503,
    ErrorKind.DELIVERY_ERROR: 502,
    ErrorKind.FINALIZATION_FAILED: 502,
    ErrorKind.AUDIT_WRITE_FAILED: 500,
}


@app.exception_handler(SigningError)
async def signing_error_handler(request: Request, exc: SigningError):
    status = STATUS_BY_KIND.get(exc.kind, 422)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = None
    if exc.kind == ErrorKind.COOLDOWN_ACTIVE and "retry_after" in exc.detail:
        headers = {"Retry-After": str(exc.detail["retry_after"])}
    return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)


@app.exception_handler(ValidationError)
async def stage_input_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Stage input is not valid",
            "error_code": ErrorKind.INVALID_STAGE_INPUT.value,
            "recovery": "reenter_data",
            "context": {"errors": exc.errors(include_url=False, include_input=False)},
        },
    )


# ─── Middleware ──────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every API request with timing."""
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 1)

    if request.url.path.startswith("/api"):
        logger.info("%s %s -> %s (%sms)", request.method, request.url.path, response.status_code, duration)

    return response


# ─── API Routers ─────────────────────────────────────────────────────
app.include_router(envelopes_router)
app.include_router(signing_router)
app.include_router(admin_router)


@app.get("/health", tags=["Health"])
def deep_health():
    """Detailed health check including dependency statuses."""
    from esign_engine.database import SessionLocal
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError

    db_ok = False
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError as exc:
        logger.error("Health check database query failed: %s", exc)
    finally:
        db.close()

    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
        "document_analyzer": "available" if settings.GEMINI_API_KEY else "unavailable",
        "eid_provider": "configured" if settings.EID_PROVIDER_URL else "unconfigured",
        "trust_service": "remote" if settings.TRUST_SERVICE_URL else "local",
        "uptime_seconds": round(time.time() - BOOT_TIME, 1),
        "version": settings.APP_VERSION,
    }
