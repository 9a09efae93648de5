"""Entitlement Reconciliation Service - Main Application.

FastAPI application that receives payment-provider webhooks and serves the
recompute RPC used by the mobile and web clients.

Security: provider webhooks authenticate by shared secret / signature,
everything under /api/entitlements requires Firebase Auth, /api/health is open.

Usage:
    uvicorn access_api.main:app --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import get_config
from .dependencies import get_firebase_app, get_firestore
from .middleware.rate_limit import setup_rate_limiting
from .routers import entitlements, health, webhooks

# =============================================================================
# CONFIGURATION
# =============================================================================

config = get_config()
DEBUG_MODE = config.debug
API_VERSION = __version__

# Logging setup
logging.basicConfig(
    level=logging.DEBUG if DEBUG_MODE else logging.INFO,
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
)
logger = logging.getLogger("access_api.main")

# HTTP status -> callable-style error code shared by all client-facing errors
ERROR_CODES = {
    400: "invalid-argument",
    401: "unauthenticated",
    403: "permission-denied",
    404: "not-found",
    405: "method-not-allowed",
}


# =============================================================================
# LIFESPAN (Startup/Shutdown)
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown hooks."""
    logger.info("Starting entitlement service v%s", API_VERSION)
    logger.info("Debug mode: %s", DEBUG_MODE)

    try:
        get_firebase_app()
        logger.info("Firebase initialized")

        get_firestore()
        logger.info("Firestore connected")
    except Exception as e:
        logger.error("Startup failed: %s", e)
        raise

    if not config.revenuecat_secrets_configured:
        logger.warning("RevenueCat webhook secrets not configured; RevenueCat events will be dropped")
    if not config.revenuecat_api_key:
        logger.warning("REVENUECAT_API_KEY not configured; subscriber snapshots cannot be fetched")
    if not (config.stripe_secret_key and config.stripe_webhook_secret):
        logger.warning("Stripe keys not configured; Stripe webhook will reject events")

    yield

    logger.info("Shutting down entitlement service")


# =============================================================================
# APPLICATION
# =============================================================================

# Create app with conditional docs
if DEBUG_MODE:
    app = FastAPI(
        title="Entitlement Reconciliation Service",
        version=API_VERSION,
        lifespan=lifespan,
    )
else:
    # Production: disable docs endpoints
    app = FastAPI(
        title="Entitlement Reconciliation Service",
        version=API_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )


# =============================================================================
# MIDDLEWARE
# =============================================================================

setup_rate_limiting(app)

# CORS - strict origins only (webhooks are server-to-server and unaffected)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
    max_age=3600,
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    # Remove headers that reveal implementation
    if "server" in response.headers:
        del response.headers["server"]
    if "x-powered-by" in response.headers:
        del response.headers["x-powered-by"]

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests for debugging."""
    start_time = datetime.now(timezone.utc)

    response = await call_next(request)

    duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
    logger.debug(
        "%s %s -> %s (%.0fms)",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )

    return response


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render HTTP errors (auth dependency failures included) as ErrorResponse."""
    code = ERROR_CODES.get(exc.status_code, "http-error")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "code": code},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request",
            "code": "invalid-argument",
            "details": {"errors": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                for err in exc.errors()
            ]},
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions with generic error response."""
    logger.exception("Unhandled exception on %s", request.url.path)

    # Return generic error to client (no stack traces)
    if DEBUG_MODE:
        return JSONResponse(
            status_code=500,
            content={
                "error": str(exc),
                "code": "INTERNAL_ERROR",
                "type": type(exc).__name__
            }
        )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "code": "INTERNAL_ERROR"
        }
    )


# =============================================================================
# ROUTERS
# =============================================================================

app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(entitlements.router, prefix="/api", tags=["Entitlements"])


# =============================================================================
# ROOT ENDPOINT
# =============================================================================

@app.get("/")
async def root():
    """Root endpoint - API info."""
    return {
        "name": "Entitlement Reconciliation Service",
        "version": API_VERSION,
        "status": "running"
    }
