"""
Payment recovery routes.

Operator endpoints to list completed payments that never granted
entitlement and to activate them, one at a time or in bulk, plus
per-transaction integrity checks and the payment audit trail.

SECURITY: Requires a session token with an operator role.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query

from src.database.session import get_db_session
from src.platform.session_auth import SessionPrincipal, get_operator_principal
from src.services.payment_audit_service import PaymentAuditService
from src.services.payment_errors import NotFoundError, ValidationError
from src.services.payment_reconciliation import DEFAULT_WINDOW_DAYS, PaymentReconciliationScanner
from src.services.payment_recovery import PaymentRecoveryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments/recovery", tags=["payment-recovery"])


@router.get("/unactivated")
async def list_unactivated_payments(
    days: int = Query(DEFAULT_WINDOW_DAYS, ge=1, le=90, description="Look-back window in days"),
    principal: SessionPrincipal = Depends(get_operator_principal),
    db_session=Depends(get_db_session),
):
    """Completed subscription payments whose account has no active entitlement."""
    divergent = PaymentReconciliationScanner(db_session).find_divergent_payments(window_days=days)
    return {
        "success": True,
        "count": len(divergent),
        "payments": [p.to_dict() for p in divergent],
    }


@router.post("/activate/{transaction_id}")
async def activate_payment(
    transaction_id: str,
    principal: SessionPrincipal = Depends(get_operator_principal),
    db_session=Depends(get_db_session),
):
    """Activate entitlement for one completed payment."""
    logger.info("Manual payment recovery requested", extra={
        "transaction_id": transaction_id,
        "operator": principal.account_id,
    })

    service = PaymentRecoveryService(db_session)
    try:
        result = service.activate_from_transaction(transaction_id, source="operator")
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {"success": True, "result": result.to_dict()}


@router.post("/process-all")
async def process_all_unactivated(
    days: int = Query(DEFAULT_WINDOW_DAYS, ge=1, le=90, description="Look-back window in days"),
    principal: SessionPrincipal = Depends(get_operator_principal),
    db_session=Depends(get_db_session),
):
    """Recover every divergent payment in the window; failures are reported per item."""
    logger.info("Bulk payment recovery requested", extra={
        "operator": principal.account_id,
        "window_days": days,
    })

    report = PaymentRecoveryService(db_session).process_all_divergent(window_days=days, source="operator")
    return {"success": report.failed == 0, "report": report.to_dict()}


@router.get("/verify/{transaction_id}")
async def verify_transaction(
    transaction_id: str,
    principal: SessionPrincipal = Depends(get_operator_principal),
    db_session=Depends(get_db_session),
):
    """Check one ledger row against its account's entitlement."""
    report = PaymentAuditService(db_session).verify_transaction_integrity(transaction_id)
    return {"success": report.valid, "integrity": report.to_dict()}


@router.get("/audit")
async def list_audit_events(
    account_id: Optional[str] = Query(None),
    transaction_id: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    principal: SessionPrincipal = Depends(get_operator_principal),
    db_session=Depends(get_db_session),
):
    """Recent payment audit events, newest first."""
    events = PaymentAuditService(db_session).list_events(
        account_id=account_id,
        transaction_id=transaction_id,
        event_type=event_type,
        limit=limit,
    )
    return {"success": True, "count": len(events), "events": events}
