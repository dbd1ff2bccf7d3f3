"""
Payment system metrics and health.

Aggregates ledger, subscription and snapshot counts for operators, plus
a health verdict driven by recent unactivated payments.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from src.models.account import Account, EntitlementStatus
from src.models.transaction import Transaction
from src.repositories.payment_repository import (
    AccountRepository,
    SubscriptionRepository,
    TransactionRepository,
)
from src.services.payment_reconciliation import PaymentReconciliationScanner

logger = logging.getLogger(__name__)

HEALTH_HEALTHY = "healthy"
HEALTH_WARNING = "warning"

UNACTIVATED_SAMPLE_SIZE = 10


class PaymentMetricsService:
    """Read-only metrics over the payment tables."""

    def __init__(self, db_session: Session, scanner: Optional[PaymentReconciliationScanner] = None):
        self.db = db_session
        self.scanner = scanner or PaymentReconciliationScanner(db_session)
        self.accounts = AccountRepository(db_session)
        self.subscriptions = SubscriptionRepository(db_session)
        self.transactions = TransactionRepository(db_session)

    def unactivated_payments(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.scanner.find_divergent_payments(now=now)]

    def overview(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Transaction, subscription, trial, revenue and conversion metrics.

        Revenue covers the last 30 days; conversion compares new premium
        starts with new trials over the last 7 days.
        """
        now = now or datetime.now(timezone.utc)
        last_30_days = now - timedelta(days=30)
        last_7_days = now - timedelta(days=7)

        all_transactions = self.transactions.count_by_status()
        recent_transactions = self.transactions.count_by_status(since=last_30_days)
        subscriptions = self.subscriptions.count_by_status()
        revenue = self.transactions.revenue_since(last_30_days)

        new_trials = self.db.query(func.count(Account.id)).filter(
            Account.trial_start >= last_7_days
        ).scalar() or 0
        conversions = self.db.query(func.count(Account.id)).filter(
            Account.entitlement_status == EntitlementStatus.PREMIUM.value,
            Account.subscription_start >= last_7_days,
        ).scalar() or 0
        conversion_rate = (conversions / new_trials) * 100 if new_trials else 0.0

        unactivated = self.unactivated_payments(now=now)

        return {
            "transactions": {
                "total": sum(all_transactions.values()),
                "completed": all_transactions.get("completed", 0),
                "pending": all_transactions.get("pending", 0),
                "failed": all_transactions.get("failed", 0),
                "recent_30_days": sum(recent_transactions.values()),
                "recent_completed_30_days": recent_transactions.get("completed", 0),
            },
            "subscriptions": {
                "total": sum(subscriptions.values()),
                "active": subscriptions.get("active", 0),
                "trialing": subscriptions.get("trialing", 0),
                "canceled": subscriptions.get("canceled", 0),
            },
            "accounts": {
                "in_trial": self.accounts.count_by_status(EntitlementStatus.TRIAL, covering_at=now),
                "premium": self.accounts.count_by_status(EntitlementStatus.PREMIUM, covering_at=now),
            },
            "revenue": {
                "last_30_days": revenue["total_revenue"],
                "average_amount": revenue["average_amount"],
                "transaction_count": revenue["transaction_count"],
            },
            "conversion": {
                "trial_to_premium_rate": round(conversion_rate, 2),
                "new_trials_7_days": new_trials,
                "conversions_7_days": conversions,
            },
            "issues": {
                "unactivated_payments": len(unactivated),
                "unactivated_payments_sample": unactivated[:UNACTIVATED_SAMPLE_SIZE],
            },
            "timestamp": now.isoformat(),
        }

    def health(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Health verdict from the last 24 hours of activity."""
        now = now or datetime.now(timezone.utc)
        last_24_hours = now - timedelta(hours=24)

        recent_transactions = self.db.query(func.count(Transaction.id)).filter(
            Transaction.created_at >= last_24_hours
        ).scalar() or 0
        recent_unactivated = [
            p for p in self.scanner.find_divergent_payments(now=now)
            if p.completed_at >= last_24_hours
        ]
        active_subscriptions = self.subscriptions.count_by_status().get("active", 0)

        status = HEALTH_HEALTHY
        issues = []
        if recent_unactivated:
            status = HEALTH_WARNING
            issues.append({
                "type": "unactivated_payments",
                "count": len(recent_unactivated),
                "message": f"{len(recent_unactivated)} completed payment(s) in the last 24h without an active subscription",
            })
        if recent_transactions == 0 and active_subscriptions == 0:
            status = HEALTH_WARNING
            issues.append({
                "type": "no_activity",
                "message": "No recent payment activity",
            })

        if status != HEALTH_HEALTHY:
            logger.warning("Payment system health degraded", extra={
                "issues": [i["type"] for i in issues],
            })

        return {
            "status": status,
            "timestamp": now.isoformat(),
            "metrics": {
                "recent_transactions_24h": recent_transactions,
                "unactivated_payments_24h": len(recent_unactivated),
                "active_subscriptions": active_subscriptions,
            },
            "issues": issues or None,
        }


def get_payment_metrics_service(db_session: Session) -> PaymentMetricsService:
    """Factory function to create a PaymentMetricsService."""
    return PaymentMetricsService(db_session)
