"""FastAPI application for the Kepler Chat backend.

Provides the main application instance with routers, CORS and the
domain-error exception handler configured.
"""

import logging
import sys
import time as _time
from contextlib import asynccontextmanager
from importlib.metadata import version as _pkg_version
from typing import Any

from fastapi import FastAPI, Request

from src.config import get_config

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
# Ensure our application loggers are captured
logging.getLogger("src").setLevel(get_config().server.log_level.upper())
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.deps import shutdown_orchestrator
from src.api.routes import conversations, credentials, generations, models, rules, usage
from src.db.connection import close_db, get_db_context, init_db
from src.errors import (
    AuthError,
    ConflictError,
    DomainError,
    NotFoundError,
    ProviderError,
    UnsupportedCapabilityError,
    ValidationError,
)
from src.services.conversation_persistence_service import ConversationPersistenceService

logger = logging.getLogger(__name__)

_startup_time: float = 0.0

# First match wins; subclasses must precede their bases.
_ERROR_STATUS: list[tuple[type[DomainError], int]] = [
    (ValidationError, 400),
    (AuthError, 401),
    (NotFoundError, 404),
    (ConflictError, 409),
    (UnsupportedCapabilityError, 422),
    (ProviderError, 502),
]


def status_for_error(exc: DomainError) -> int:
    """HTTP status for a domain error (500 when unmapped)."""
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


def run_startup_recovery() -> int:
    """Clear generating flags left behind by a previous process.

    No generation can be running at startup, so any set flag is stale.

    Returns:
        Number of conversations recovered.
    """
    with get_db_context() as db:
        recovered = ConversationPersistenceService(db).reset_stale_generating()
    if recovered:
        logger.warning("Startup recovery: cleared %d stale generating flag(s)", recovered)
    return recovered


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Async lifespan: schema + startup recovery, then orchestrator and engine shutdown."""
    global _startup_time

    # --- Startup ---
    _startup_time = _time.time()
    init_db()

    # Non-blocking: failures logged, not propagated
    try:
        run_startup_recovery()
    except Exception as e:
        logger.error("Startup recovery failed (non-blocking): %s", e)

    yield

    # --- Shutdown ---
    await shutdown_orchestrator()
    close_db()


app = FastAPI(
    title="Kepler Chat API",
    description="Multi-vendor chat generation backend",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS allowlist comes from config. If empty, CORS is disabled (same-origin only).
allowed_origins = get_config().server.allowed_origins
if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-User-Id"],
    )


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Render a domain error as {"error": {"code", "message"}}.

    Args:
        request: The incoming request.
        exc: The DomainError raised by a route or service.

    Returns:
        JSONResponse with the mapped status code.
    """
    status = status_for_error(exc)
    if status >= 500:
        logger.error("Unhandled domain error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status,
        content={"error": {"code": exc.code, "message": exc.message}},
    )


# Include routers
app.include_router(generations.router, prefix="/api/v1")
app.include_router(conversations.router, prefix="/api/v1")
app.include_router(credentials.router, prefix="/api/v1")
app.include_router(models.router, prefix="/api/v1")
app.include_router(rules.router, prefix="/api/v1")
app.include_router(usage.router, prefix="/api/v1")


@app.get("/health")
def health_check() -> dict[str, Any]:
    """Liveness check with uptime and version."""
    uptime = int(_time.time() - _startup_time) if _startup_time else 0
    try:
        version = _pkg_version("kepler-chat")
    except Exception:
        version = "unknown"
    return {"status": "healthy", "version": version, "uptime_seconds": uptime}


@app.get("/readyz")
def readiness_check():
    """Readiness check gated on database connectivity.

    An unreadable credential key reports "degraded" with HTTP 200.
    """
    from sqlalchemy import text

    from src.services.credential_encryption import get_key_source_info, get_or_create_key

    try:
        with get_db_context() as db:
            db.execute(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "checks": {"database": {"status": "error", "message": str(exc)}},
            },
        )

    checks: dict[str, Any] = {"database": {"status": "ok"}}
    try:
        get_or_create_key()
        checks["credential_key"] = {"status": "ok", "source": get_key_source_info()["source"]}
    except Exception as exc:
        logger.warning("Credential key check failed: %s", exc)
        checks["credential_key"] = {
            "status": "degraded",
            "message": f"Credential key check failed: {exc}",
        }

    status = "ready" if all(c["status"] == "ok" for c in checks.values()) else "degraded"
    return {"status": status, "checks": checks}
