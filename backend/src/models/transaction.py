"""
Transaction model, the payment ledger.

Append-oriented: rows are created per payment attempt and only move
forward through the allowed status transitions below.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column, String, Numeric, DateTime, Text, ForeignKey, Index
)

from src.models.base import Base, TimestampMixin, JSONType, generate_uuid, as_utc


class TransactionType(str, Enum):
    """Transaction type values."""
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one-time"
    REFUND = "refund"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class TransactionStatus(str, Enum):
    """Transaction status values."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELED = "canceled"


class PaymentProvider(str, Enum):
    MERCADOPAGO = "mercadopago"
    APPLE = "apple"


# Forward-only ledger transitions. Anything else is a stale or duplicate delivery.
ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING.value: {
        TransactionStatus.PROCESSING.value,
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED.value,
        TransactionStatus.CANCELED.value,
    },
    TransactionStatus.PROCESSING.value: {
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED.value,
        TransactionStatus.CANCELED.value,
    },
    TransactionStatus.COMPLETED.value: {
        TransactionStatus.REFUNDED.value,
    },
}


class Transaction(Base, TimestampMixin):
    """A single payment attempt or settlement."""

    __tablename__ = "transactions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    account_id = Column(
        String(36),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    type = Column(
        String(20),
        nullable=False,
        default=TransactionType.SUBSCRIPTION.value
    )
    amount = Column(Numeric(12, 2, asdecimal=False), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="CLP")
    status = Column(
        String(20),
        nullable=False,
        default=TransactionStatus.PENDING.value,
        index=True
    )

    provider = Column(String(30), nullable=False, default=PaymentProvider.MERCADOPAGO.value)
    provider_transaction_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Provider payment id, filled on settlement; idempotency key"
    )
    provider_preference_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Checkout intent id returned by the provider"
    )

    related_subscription_id = Column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True
    )
    plan = Column(String(20), nullable=True)
    description = Column(Text, nullable=True)

    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_info = Column(JSONType, nullable=True)
    extra_metadata = Column(JSONType, nullable=True, default=dict)

    __table_args__ = (
        Index("ix_transactions_status_type", "status", "type"),
        Index("ix_transactions_account_created", "account_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Transaction(id={self.id}, account_id={self.account_id}, status={self.status})>"

    @property
    def completed_at(self) -> Optional[datetime]:
        """Settlement time, falling back to creation time."""
        return as_utc(self.processed_at) or as_utc(self.created_at)

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in ALLOWED_TRANSITIONS.get(self.status, set())

    def merge_metadata(self, **values) -> None:
        """Replace the metadata dict so the JSON column is flagged dirty."""
        merged = dict(self.extra_metadata or {})
        merged.update(values)
        self.extra_metadata = merged
