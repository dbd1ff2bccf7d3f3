"""
Payment metrics routes for operators.

SECURITY: Requires a session token with an operator role.
"""

import logging

from fastapi import APIRouter, Depends

from src.database.session import get_db_session
from src.platform.session_auth import SessionPrincipal, get_operator_principal
from src.services.payment_metrics import PaymentMetricsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments/metrics", tags=["payment-metrics"])


def get_metrics_service(db_session=Depends(get_db_session)) -> PaymentMetricsService:
    return PaymentMetricsService(db_session)


@router.get("/overview")
async def metrics_overview(
    principal: SessionPrincipal = Depends(get_operator_principal),
    service: PaymentMetricsService = Depends(get_metrics_service),
):
    """Ledger, subscription, revenue and conversion totals."""
    return {"success": True, "metrics": service.overview()}


@router.get("/unactivated")
async def metrics_unactivated(
    principal: SessionPrincipal = Depends(get_operator_principal),
    service: PaymentMetricsService = Depends(get_metrics_service),
):
    payments = service.unactivated_payments()
    return {"success": True, "count": len(payments), "payments": payments}


@router.get("/health")
async def metrics_health(
    principal: SessionPrincipal = Depends(get_operator_principal),
    service: PaymentMetricsService = Depends(get_metrics_service),
):
    """Healthy, or warning with the issues found in the last 24 hours."""
    return service.health()
