"""
============================================================================
Prompt Market Payments v1.0.0
FastAPI Application Entry Point - Payment Handshake Service
============================================================================

Reliability Level: L6 Critical (money movement)
Input Constraints: JSON requests from the marketplace front end
Side Effects: Ledger writes, gateway confirmation calls

MANDATE:
- Refuse to start without gateway credentials
- Every response carries Access-Control-Allow-Origin
- No silent failures: unhandled errors return INTERNAL_SERVER_ERROR
- Stale preparations are failed by the expiry worker

============================================================================
"""

import os
import traceback
import logging
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.api.payments import (
    router as payments_router,
    json_response,
    render_invalid_request,
    render_nested_error,
)
from app.database.session import (
    SessionLocal,
    check_database_connection,
    engine,
    init_database,
)
from services.payment_config import PaymentConfigurationError, get_payment_config
from services.payment_models import PaymentError, PaymentErrorCode
from services.preparation_expiry_worker import ExpiryWorker

# Configure module logger
logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


# ============================================================================
# GLOBAL INSTANCES
# ============================================================================

# Expiry Worker singleton (initialized in lifespan)
_expiry_worker: Optional[ExpiryWorker] = None


def get_expiry_worker() -> Optional[ExpiryWorker]:
    """
    Get the global Expiry Worker instance.

    Returns:
        ExpiryWorker instance or None if not initialized
    """
    return _expiry_worker


# ============================================================================
# APPLICATION LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager for startup/shutdown events.

    Startup:
        - Load and validate payment configuration (fail-closed)
        - Verify database connectivity
        - Create tables when DB_AUTO_CREATE=true
        - Start the preparation expiry worker

    Shutdown:
        - Stop the expiry worker
        - Close database connections
    """
    global _expiry_worker

    print("=" * 60)
    print(f"PROMPT MARKET PAYMENTS v{APP_VERSION}")
    print("=" * 60)
    print(f"Startup Time: {datetime.now(timezone.utc).isoformat()}")

    try:
        payment_config = get_payment_config(validate=True)
        print("[OK] Payment configuration validated")
        for key, value in payment_config.to_dict().items():
            print(f"     {key}: {value}")
    except PaymentConfigurationError as e:
        print(f"[CRITICAL] {e}")
        print("[CRITICAL] System cannot accept payments without gateway credentials")
        raise

    try:
        check_database_connection()
        print("[OK] Database connection verified")
    except Exception as e:
        print(f"[CRITICAL] Database connection failed: {e}")
        print("[CRITICAL] System cannot start without database connectivity")
        raise

    if os.getenv("DB_AUTO_CREATE", "false").lower() == "true":
        init_database()
        print("[OK] Payment tables ensured (DB_AUTO_CREATE)")

    if payment_config.expiry_sweep_enabled:
        try:
            _expiry_worker = ExpiryWorker(
                session_factory=SessionLocal,
                interval_seconds=payment_config.expiry_sweep_interval_seconds,
            )
            await _expiry_worker.start()
            print("[OK] Preparation Expiry Worker started")
            print(f"     Interval: {payment_config.expiry_sweep_interval_seconds}s")
        except Exception as expiry_error:
            print(f"[WARN] Preparation Expiry Worker failed to start: {expiry_error}")
            print("       Stale preparations will stay prepared")
            _expiry_worker = None
    else:
        print("[INFO] Preparation Expiry Worker disabled")

    print("=" * 60)

    yield

    print("=" * 60)
    print("PROMPT MARKET PAYMENTS - SHUTDOWN")

    if _expiry_worker is not None:
        try:
            await _expiry_worker.stop()
            print("[OK] Preparation Expiry Worker stopped")
        except Exception as e:
            print(f"[WARN] Preparation Expiry Worker shutdown failed: {e}")
        _expiry_worker = None

    engine.dispose()
    print("[OK] Database connections closed")
    print("=" * 60)


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

app = FastAPI(
    title="Prompt Market Payments",
    description=(
        "Payment preparation / confirmation handshake for the prompt marketplace.\n\n"
        "**prepare-payment** validates item, price and ownership and reserves "
        "an order; **confirm-payment** confirms the widget payment with the "
        "gateway and settles the ledger."
    ),
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


# ============================================================================
# MIDDLEWARE
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed JSON or wrongly typed fields -> 400 INVALID_REQUEST."""
    return render_invalid_request(request, exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unhandled errors.

    The stack trace is only included when PAYMENT_DEBUG_ERRORS=true.
    """
    logger.error(
        f"[{PaymentErrorCode.INTERNAL_SERVER_ERROR}] Unhandled exception | "
        f"path={request.url.path} | error={exc}",
        exc_info=exc,
    )

    extras = {}
    try:
        debug_errors = get_payment_config(validate=False).debug_errors
    except PaymentConfigurationError:
        debug_errors = False
    if debug_errors:
        extras["stack"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )

    error = PaymentError.from_code(
        PaymentErrorCode.INTERNAL_SERVER_ERROR,
        details=str(exc),
        **extras
    )
    return json_response(500, render_nested_error(error))


# ============================================================================
# ROUTERS
# ============================================================================

app.include_router(payments_router)


# ============================================================================
# SYSTEM ENDPOINTS
# ============================================================================

@app.get(
    "/",
    summary="System Status",
    description="Returns the current system status.",
    tags=["System"]
)
async def root():
    db_status = "healthy"
    try:
        check_database_connection()
    except Exception:
        db_status = "unhealthy"

    worker = get_expiry_worker()

    return {
        "system": "Prompt Market Payments",
        "version": APP_VERSION,
        "status": "operational",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "database": db_status,
            "expiry_worker": "running" if worker is not None and worker.is_running else "stopped",
        },
    }


@app.get(
    "/health",
    summary="Health Check",
    description="Lightweight health check for load balancers and monitoring.",
    tags=["System"]
)
async def health_check():
    """
    Lightweight health check endpoint.

    Returns:
        dict: Health status (503 if the database is unreachable)
    """
    try:
        check_database_connection()
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "error": str(e)}
        )


@app.get(
    "/metrics",
    summary="Prometheus Metrics",
    description="Exposes Prometheus metrics for observability.",
    tags=["Observability"]
)
async def metrics():
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# ============================================================================
# ENTRY POINT
# ============================================================================

def main() -> None:
    """Run the payment service with uvicorn (PAYMENTS_PORT, default 8000)."""
    import uvicorn

    port = int(os.getenv("PAYMENTS_PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")


if __name__ == "__main__":
    main()
