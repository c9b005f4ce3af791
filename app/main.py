"""
Receipt Reconciler API - Main Application
=========================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.db.session import init_db, close_db
from app.core.errors import setup_exception_handlers
from app.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that enriches every New Relic transaction with
    custom attributes for filtering and alerting.

    Raw ASGI keeps the handler in the same task, so contextvars-based
    span propagation still reaches DB and outbound HTTP spans.

    Captures: response status, latency, HTTP method and route pattern.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # default until we capture the real one

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                # Route pattern (e.g. "/api/v1/subscriptions/{original_transaction_id}")
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("environment", settings.ENVIRONMENT),
                ])


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Checks the database connection on startup when one is configured and
    disposes the engine on shutdown.
    """
    logger.info("Starting Receipt Reconciler API (environment=%s)", settings.ENVIRONMENT)

    if settings.database_url_async:
        try:
            await init_db()
        except Exception as e:
            # Continue startup even if DB fails (for health checks)
            logger.error("Database connection failed: %s", e)
    else:
        logger.warning("DATABASE_URL not set; subscriptions are kept in memory only")

    yield

    logger.info("Shutting down Receipt Reconciler API")
    if settings.database_url_async:
        await close_db()


# Create FastAPI application
app = FastAPI(
    title="Receipt Reconciler API",
    description="""
## In-App Purchase Verification and Subscription Reconciliation

Verifies App Store and Google Play purchases and keeps one authoritative
subscription record per purchase lineage.

### Features
- **Verification**: App Store receipts (with sandbox fallback) and Google Play tokens
- **Webhooks**: App Store server notifications and Google Play RTDN via Pub/Sub
- **Reconciliation**: Out-of-order and duplicate events resolved by expiry ordering
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"model": ErrorResponse, "description": "Unsupported platform"},
        404: {"model": ErrorResponse, "description": "Resource not found"},
        422: {"model": ErrorResponse, "description": "Validation error"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
        503: {"model": ErrorResponse, "description": "Store API unavailable or not configured"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns the current status of the API.
    """
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Receipt Reconciler API",
        "version": "1.0.0",
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import verify, webhooks
app.include_router(verify.router, prefix="/api/v1", tags=["Verification"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
