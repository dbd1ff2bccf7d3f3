"""
Payment API routes for plans, checkout and subscription management.

All routes except the plan list require a session bearer token; the
token's subject is the account id.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from src.api.dependencies.subscription_access import AccessContext, require_premium
from src.database.session import get_db_session
from src.platform.session_auth import SessionPrincipal, get_session_principal
from src.services.apple_receipt_service import AppleReceiptService
from src.services.payment_errors import (
    PaymentServiceError,
    ConfigurationError,
    NotFoundError,
    ValidationError,
    ReceiptInvalid,
    UnknownProduct,
    ProviderUnavailable,
)
from src.services.subscription_orchestrator import SubscriptionOrchestrator
from src.services.trial_monitor import TrialMonitor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


# Request/Response models
class CreateCheckoutRequest(BaseModel):
    """Request to create a checkout intent."""
    plan: str = Field(..., description="Plan id (weekly, monthly, quarterly, semestral, yearly)")
    success_url: Optional[str] = Field(None, description="Redirect after an approved payment")
    cancel_url: Optional[str] = Field(None, description="Redirect after an abandoned checkout")
    pending_url: Optional[str] = Field(None, description="Redirect after a pending payment")


class CheckoutResponse(BaseModel):
    """Checkout intent with the provider redirect."""
    success: bool = True
    transaction_id: str
    intent_id: str
    redirect_url: str
    sandbox_redirect_url: Optional[str] = None
    plan: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    """Request to cancel the current subscription."""
    immediate: bool = Field(False, description="End access now instead of at period end")


class AppleReceiptRequest(BaseModel):
    """Receipt from an App Store purchase."""
    receipt_data: str = Field(..., min_length=1, description="Base64 receipt")
    product_id: str = Field(..., min_length=1, description="App Store product id")
    transaction_id: Optional[str] = Field(None, description="Store transaction id reported by the client")
    sandbox: bool = Field(False, description="Receipt came from a sandbox build")


class PlansListResponse(BaseModel):
    """List of available plans."""
    plans: List[Dict[str, Any]]


def _raise_http(e: PaymentServiceError, account_id: Optional[str] = None) -> None:
    """Translate a service error into an HTTPException."""
    if isinstance(e, ConfigurationError):
        logger.error("Payment provider not configured", extra={"account_id": account_id, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, ReceiptInvalid):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "receipt_status": e.status_code},
        )
    if isinstance(e, UnknownProduct):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if isinstance(e, ProviderUnavailable):
        logger.error("Payment provider unavailable", extra={
            "account_id": account_id,
            "provider": e.provider,
            "error": str(e),
        })
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    logger.error("Payment service error", extra={"account_id": account_id, "error": str(e)})
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Payment operation failed",
    )


def get_orchestrator(db_session=Depends(get_db_session)) -> SubscriptionOrchestrator:
    return SubscriptionOrchestrator(db_session)


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator)):
    """Available plans with price, interval and savings against monthly billing."""
    return PlansListResponse(plans=orchestrator.list_plans())


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    checkout_request: CreateCheckoutRequest,
    principal: SessionPrincipal = Depends(get_session_principal),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """
    Create a Mercado Pago checkout for a plan.

    The client redirects to redirect_url; the subscription is activated
    when the provider notifies the approved payment.
    """
    logger.info("Creating checkout", extra={
        "account_id": principal.account_id,
        "plan": checkout_request.plan,
    })

    return_urls = {
        key: value
        for key, value in {
            "success": checkout_request.success_url,
            "failure": checkout_request.cancel_url,
            "pending": checkout_request.pending_url,
        }.items()
        if value
    }

    try:
        result = await orchestrator.create_checkout(
            principal.account_id,
            checkout_request.plan,
            return_urls=return_urls or None,
        )
    except PaymentServiceError as e:
        _raise_http(e, principal.account_id)

    return CheckoutResponse(
        transaction_id=result.transaction_id,
        intent_id=result.intent_id,
        redirect_url=result.redirect_url,
        sandbox_redirect_url=result.sandbox_redirect_url,
        plan=result.plan,
        amount=result.amount,
        currency=result.currency,
    )


@router.get("/subscription-status")
async def get_subscription_status(
    principal: SessionPrincipal = Depends(get_session_principal),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """Merged entitlement view of the calling account."""
    try:
        return orchestrator.get_status(principal.account_id).to_dict()
    except PaymentServiceError as e:
        _raise_http(e, principal.account_id)


@router.post("/cancel-subscription")
async def cancel_subscription(
    cancel_request: Optional[CancelSubscriptionRequest] = None,
    principal: SessionPrincipal = Depends(get_session_principal),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """Cancel now, or at the end of the current period (default)."""
    immediate = cancel_request.immediate if cancel_request else False
    try:
        view = orchestrator.cancel_subscription(principal.account_id, immediate=immediate)
    except PaymentServiceError as e:
        _raise_http(e, principal.account_id)

    return {
        "success": True,
        "message": "Subscription canceled" if immediate else "Subscription will cancel at period end",
        "subscription": view.to_dict(),
    }


@router.post("/reactivate")
async def reactivate_subscription(
    principal: SessionPrincipal = Depends(get_session_principal),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """Undo a pending end-of-period cancellation."""
    try:
        view = orchestrator.reactivate(principal.account_id)
    except PaymentServiceError as e:
        _raise_http(e, principal.account_id)

    return {"success": True, "message": "Subscription reactivated", "subscription": view.to_dict()}


@router.post("/trial")
async def start_trial(
    principal: SessionPrincipal = Depends(get_session_principal),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """Start the one-time free trial."""
    try:
        view = orchestrator.start_trial(principal.account_id)
    except PaymentServiceError as e:
        _raise_http(e, principal.account_id)

    return {"success": True, "message": "Trial started", "subscription": view.to_dict()}


@router.get("/trial-info")
async def get_trial_info(
    principal: SessionPrincipal = Depends(get_session_principal),
    db_session=Depends(get_db_session),
):
    """Trial state and days remaining for the calling account."""
    try:
        return TrialMonitor(db_session).get_trial_info(principal.account_id)
    except PaymentServiceError as e:
        _raise_http(e, principal.account_id)


@router.get("/transactions")
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    status_filter: Optional[str] = Query(None, alias="status"),
    type_filter: Optional[str] = Query(None, alias="type"),
    principal: SessionPrincipal = Depends(get_session_principal),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """Paginated transaction history of the calling account."""
    try:
        return orchestrator.list_transactions(
            principal.account_id,
            limit=limit,
            skip=skip,
            status=status_filter,
            type=type_filter,
        )
    except PaymentServiceError as e:
        _raise_http(e, principal.account_id)


@router.get("/transactions/stats")
async def transaction_stats(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    principal: SessionPrincipal = Depends(get_session_principal),
    orchestrator: SubscriptionOrchestrator = Depends(get_orchestrator),
):
    """Counts by status and completed totals for the calling account."""
    try:
        return orchestrator.transaction_stats(principal.account_id, start=start_date, end=end_date)
    except PaymentServiceError as e:
        _raise_http(e, principal.account_id)


@router.post("/apple/validate-receipt")
async def validate_apple_receipt(
    receipt_request: AppleReceiptRequest,
    principal: SessionPrincipal = Depends(get_session_principal),
    db_session=Depends(get_db_session),
):
    """
    Verify an App Store receipt and grant the matching plan.

    Returns the granted expiry; is_active is false when the newest
    purchase in the receipt has already lapsed.
    """
    service = AppleReceiptService(db_session)
    try:
        result = await service.validate_and_process(
            principal.account_id,
            receipt_request.receipt_data,
            receipt_request.product_id,
            external_transaction_id=receipt_request.transaction_id,
            sandbox_hint=receipt_request.sandbox,
        )
    except PaymentServiceError as e:
        _raise_http(e, principal.account_id)

    return {"success": True, "subscription": result.to_dict()}


@router.get("/premium-check")
async def premium_check(access: AccessContext = Depends(require_premium())):
    """Example route available to paying subscribers only."""
    return {
        "success": True,
        "account_id": access.account_id,
        "subscription": access.view.to_dict(),
    }
