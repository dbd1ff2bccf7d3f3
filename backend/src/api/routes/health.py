"""
Health check route.

Unauthenticated. Returns 503 when the database is unreachable so load
balancers take the instance out of rotation.
"""

import os
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.config.payment_settings import get_payment_settings
from src.database.session import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(db_session=Depends(get_db_session)):
    database = "connected"
    try:
        db_session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("Health check database query failed", extra={"error": str(e)})
        database = "unavailable"

    settings = get_payment_settings()
    body = {
        "status": "ok" if database == "connected" else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": database,
        "environment": settings.environment,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "providers": {
            "mercadopago": settings.mercadopago_configured,
            "apple": bool(settings.apple_shared_secret),
        },
    }
    return JSONResponse(status_code=200 if database == "connected" else 503, content=body)
