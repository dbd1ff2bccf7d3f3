"""
FastAPI application entry point for the subscription entitlement API.

Payment, webhook, recovery and metrics routers are mounted here. Accounts
authenticate with a session bearer token; the Mercado Pago webhook
authenticates by signature.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from src.api.routes import health
from src.api.routes import payments
from src.api.routes import webhooks_mercadopago
from src.api.routes import payment_recovery
from src.api.routes import payment_metrics
from src.config.payment_settings import get_payment_settings
from src.config.subscription_plans import get_plan_catalog

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting subscription API")

    settings = get_payment_settings()
    app.state.mercadopago_configured = settings.mercadopago_configured

    if not settings.mercadopago_configured:
        logger.warning(
            "MERCADOPAGO_ACCESS_TOKEN not set. Checkout will return 503 until it is configured."
        )
    elif settings.mercadopago_test_mode:
        logger.info("Mercado Pago running with a test access token")

    if not settings.mercadopago_webhook_secret:
        logger.warning(
            "MERCADOPAGO_WEBHOOK_SECRET not set. Webhook signatures are not verified."
        )
    if not settings.apple_shared_secret:
        logger.warning("APPLE_SHARED_SECRET not set. Auto-renewable receipts will not verify.")
    if not os.getenv("SESSION_JWT_SECRET"):
        logger.error("SESSION_JWT_SECRET is not set. Authenticated endpoints will return 401.")

    # Fail fast on a malformed plan catalog
    catalog = get_plan_catalog()
    logger.info("Plan catalog loaded", extra={"plans": sorted(catalog.get_all().keys())})

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. All database-backed endpoints will return 503.")
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(local)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    yield

    # Shutdown
    logger.info("Shutting down subscription API")


# Create FastAPI app
app = FastAPI(
    title="Subscription Entitlement API",
    description="Subscription lifecycle, payment reconciliation and access control",
    version="1.0.0",
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include health route (no authentication)
app.include_router(health.router)

# Account-facing payment routes (session token)
app.include_router(payments.router)

# Provider webhooks (signature verified)
app.include_router(webhooks_mercadopago.router)

# Operator routes (session token with operator role)
app.include_router(payment_recovery.router)
app.include_router(payment_metrics.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
