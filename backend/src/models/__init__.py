"""
Database models for accounts, subscriptions, the payment ledger and audit.

Importing this package registers the domain tables on Base.metadata; the
audit table lives in src.platform.payment_audit.
"""

from src.models.base import Base, TimestampMixin
from src.models.account import Account, EntitlementStatus
from src.models.subscription import Subscription, SubscriptionStatus, SubscriptionPlan
from src.models.transaction import (
    Transaction,
    TransactionStatus,
    TransactionType,
    PaymentProvider,
)
from src.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "Account",
    "EntitlementStatus",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionPlan",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "PaymentProvider",
    "ProcessedWebhookEvent",
]
