"""Repository layer for accounts, subscriptions, the ledger and webhook events."""

from src.repositories.payment_repository import (
    AccountRepository,
    SubscriptionRepository,
    TransactionRepository,
    WebhookEventRepository,
)

__all__ = [
    "AccountRepository",
    "SubscriptionRepository",
    "TransactionRepository",
    "WebhookEventRepository",
]
