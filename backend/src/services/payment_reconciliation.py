"""
Reconciliation scanner for "paid but not entitled" divergence.

Compares the transaction ledger with both entitlement representations.
A completed subscription payment whose paid period is still running
must be covered by the Subscription record or the account snapshot;
anything else is divergence for the recovery engine to repair.

The scan is bounded by a completion window so its cost follows recent
volume rather than full history.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.config.subscription_plans import plan_period_end
from src.models.account import Account
from src.models.subscription import Subscription
from src.models.transaction import Transaction
from src.repositories.payment_repository import (
    AccountRepository,
    SubscriptionRepository,
    TransactionRepository,
)
from src.services.entitlement_resolver import EntitlementView, resolve_entitlement
from src.services.payment_errors import NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 7


@dataclass
class DivergentPayment:
    """A completed subscription payment without matching entitlement."""
    transaction_id: str
    account_id: str
    plan: Optional[str]
    amount: float
    currency: str
    provider: str
    completed_at: datetime
    days_since_completion: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "account_id": self.account_id,
            "plan": self.plan,
            "amount": self.amount,
            "currency": self.currency,
            "provider": self.provider,
            "completed_at": self.completed_at.isoformat(),
            "days_since_completion": self.days_since_completion,
        }


@dataclass
class AccessVerification:
    """Entitlement recomputed from both representations."""
    account_id: str
    has_access: bool
    is_premium: bool
    is_trial: bool
    status: str
    source: str
    record_active: bool
    snapshot_active: bool
    period_end: Optional[datetime] = None

    @property
    def consistent(self) -> bool:
        return self.record_active == self.snapshot_active

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "has_access": self.has_access,
            "is_premium": self.is_premium,
            "is_trial": self.is_trial,
            "status": self.status,
            "source": self.source,
            "record_active": self.record_active,
            "snapshot_active": self.snapshot_active,
            "consistent": self.consistent,
            "period_end": self.period_end.isoformat() if self.period_end else None,
        }


def _parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def paid_until(transaction: Transaction) -> Optional[datetime]:
    """
    End of the period a completed transaction paid for.

    Receipt-backed rows carry their expiry in metadata; other rows use
    the plan period from the completion time. None when the plan is unknown.
    """
    expires_at = _parse_iso((transaction.extra_metadata or {}).get("expires_at"))
    if expires_at is not None:
        return expires_at
    completed_at = transaction.completed_at
    if completed_at is None or not transaction.plan:
        return None
    try:
        return plan_period_end(transaction.plan, completed_at)
    except ValueError:
        return None


def has_coverage(
    account: Optional[Account],
    subscription: Optional[Subscription],
    now: datetime,
) -> bool:
    """Either representation shows active or trial coverage."""
    if subscription is not None and resolve_entitlement(None, subscription, now).is_active:
        return True
    if account is not None and resolve_entitlement(account, None, now).is_active:
        return True
    return False


class PaymentReconciliationScanner:
    """Finds completed payments that did not result in entitlement."""

    def __init__(self, db_session: Session):
        self.db = db_session
        self.accounts = AccountRepository(db_session)
        self.subscriptions = SubscriptionRepository(db_session)
        self.transactions = TransactionRepository(db_session)

    def find_divergent_payments(
        self,
        window_days: int = DEFAULT_WINDOW_DAYS,
        now: Optional[datetime] = None,
    ) -> List[DivergentPayment]:
        """
        Scan recent completed subscription payments for missing entitlement.

        Args:
            window_days: Only payments completed within this many days are scanned
            now: Evaluation instant (defaults to the current UTC time)

        Returns:
            Divergent payments, oldest first
        """
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=window_days)
        candidates = self.transactions.list_completed_subscriptions_since(since)

        divergent: List[DivergentPayment] = []
        for transaction in candidates:
            end = paid_until(transaction)
            if end is not None and end <= now:
                continue

            account = self.accounts.get_by_id(transaction.account_id)
            subscription = self.subscriptions.get_for_account(transaction.account_id)
            if has_coverage(account, subscription, now):
                continue

            completed_at = transaction.completed_at or now
            divergent.append(DivergentPayment(
                transaction_id=transaction.id,
                account_id=transaction.account_id,
                plan=transaction.plan,
                amount=float(transaction.amount or 0),
                currency=transaction.currency,
                provider=transaction.provider,
                completed_at=completed_at,
                days_since_completion=max(0, (now - completed_at).days),
            ))

        logger.info("Divergence scan completed", extra={
            "window_days": window_days,
            "scanned": len(candidates),
            "divergent": len(divergent),
        })
        return divergent

    def verify_user_access(self, account_id: str, now: Optional[datetime] = None) -> AccessVerification:
        """
        Recompute an account's entitlement from both representations.

        Raises:
            NotFoundError: If the account does not exist
        """
        now = now or datetime.now(timezone.utc)
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        subscription = self.subscriptions.get_for_account(account_id)

        view: EntitlementView = resolve_entitlement(account, subscription, now)
        record_active = subscription is not None and resolve_entitlement(None, subscription, now).is_active
        snapshot_active = resolve_entitlement(account, None, now).is_active

        if subscription is not None and record_active != snapshot_active:
            logger.warning("Entitlement representations disagree", extra={
                "account_id": account_id,
                "record_status": subscription.status,
                "snapshot_status": account.entitlement_status,
            })

        return AccessVerification(
            account_id=account_id,
            has_access=view.is_active,
            is_premium=view.is_premium,
            is_trial=view.is_trial,
            status=view.status,
            source=view.source,
            record_active=record_active,
            snapshot_active=snapshot_active,
            period_end=view.period_end,
        )


def get_reconciliation_scanner(db_session: Session) -> PaymentReconciliationScanner:
    """Factory function to create a PaymentReconciliationScanner."""
    return PaymentReconciliationScanner(db_session)
