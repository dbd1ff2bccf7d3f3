"""
Subscription access dependencies.

Reusable FastAPI dependencies that gate routes on an active subscription.
The decision is read from the resolved entitlement at request time; an
expired trial found here is downgraded inline so the stored status never
lags the clock by more than one request.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from fastapi import HTTPException, status, Depends

from src.database.session import get_db_session
from src.entitlements.errors import SubscriptionRequiredError
from src.models.account import Account
from src.platform.payment_audit import PaymentAuditEventType, emit_payment_event
from src.platform.session_auth import SessionPrincipal, get_session_principal
from src.repositories.payment_repository import AccountRepository, SubscriptionRepository
from src.services.entitlement_resolver import EntitlementView, resolve_entitlement
from src.services.trial_monitor import expire_trial


logger = logging.getLogger(__name__)

GATE_SOURCE = "gate"


@dataclass
class AccessContext:
    """What a gated route receives once access is granted."""
    principal: SessionPrincipal
    account: Account
    view: EntitlementView

    @property
    def account_id(self) -> str:
        return self.account.id


def _load_account(db_session, account_id: str) -> Account:
    try:
        uuid.UUID(account_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid account id",
        )

    account = AccountRepository(db_session).get_by_id(account_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        )
    return account


def create_subscription_check(allow_trial: bool = True) -> Callable:
    """
    Factory function to create a subscription access dependency.

    Args:
        allow_trial: Accept accounts in a running trial, not only paying ones

    Returns:
        A FastAPI dependency function returning an AccessContext
    """

    def check_subscription_access(
        principal: SessionPrincipal = Depends(get_session_principal),
        db_session=Depends(get_db_session),
    ) -> AccessContext:
        """
        Dependency to check subscription access.

        Raises 403 with a structured body if the account is not entitled.
        """
        started = time.monotonic()
        now = datetime.now(timezone.utc)

        account = _load_account(db_session, principal.account_id)
        subscription = SubscriptionRepository(db_session).get_for_account(account.id)
        view = resolve_entitlement(account, subscription, now)
        allowed = view.allows(allow_trial)

        if not allowed and view.trial_expired:
            expire_trial(db_session, account, subscription, now, source=GATE_SOURCE)

        latency_ms = round((time.monotonic() - started) * 1000, 2)
        emit_payment_event(
            db_session,
            PaymentAuditEventType.ACCESS_GRANTED if allowed else PaymentAuditEventType.ACCESS_DENIED,
            account_id=account.id,
            source=GATE_SOURCE,
            principal=principal.account_id,
            allow_trial=allow_trial,
            status=view.status,
            entitlement_source=view.source,
            trial_expired=view.trial_expired,
            latency_ms=latency_ms,
        )
        db_session.commit()

        if not allowed:
            error = SubscriptionRequiredError(
                current_status=view.status,
                trial_expired=view.trial_expired,
                premium_only=not allow_trial,
                plan=view.plan,
            )
            logger.warning(
                "Subscription access denied",
                extra={
                    "account_id": account.id,
                    "status": view.status,
                    "code": error.code,
                    "allow_trial": allow_trial,
                },
            )
            raise HTTPException(status_code=error.http_status, detail=error.to_dict())

        return AccessContext(principal=principal, account=account, view=view)

    return check_subscription_access


def require_active_subscription(allow_trial: bool = True) -> Callable:
    """Gate on a paid subscription, or a running trial when allow_trial is set."""
    return create_subscription_check(allow_trial=allow_trial)


def require_premium() -> Callable:
    """Gate on a paid subscription only."""
    return create_subscription_check(allow_trial=False)
