"""
Subscription model, the normalized entitlement record.

CRITICAL: One subscription per account, enforced by a unique constraint.
Records are created lazily on first activation or trial grant and are
never hard-deleted.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column, String, Boolean, DateTime, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from src.models.base import Base, TimestampMixin, JSONType, generate_uuid, as_utc


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    EXPIRED = "expired"          # Trial ran out without conversion


class SubscriptionPlan(str, Enum):
    """Billable plans."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMESTRAL = "semestral"
    YEARLY = "yearly"


ACTIVE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
})

# Moves a provider subscription notification may apply to the record.
# Canceled and expired records only come back through activation.
PROVIDER_STATUS_TRANSITIONS = {
    SubscriptionStatus.INCOMPLETE.value: {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.INCOMPLETE_EXPIRED.value,
        SubscriptionStatus.CANCELED.value,
        SubscriptionStatus.EXPIRED.value,
    },
    SubscriptionStatus.INCOMPLETE_EXPIRED.value: {
        SubscriptionStatus.CANCELED.value,
    },
    SubscriptionStatus.TRIALING.value: {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.UNPAID.value,
        SubscriptionStatus.CANCELED.value,
        SubscriptionStatus.EXPIRED.value,
    },
    SubscriptionStatus.ACTIVE.value: {
        SubscriptionStatus.PAST_DUE.value,
        SubscriptionStatus.UNPAID.value,
        SubscriptionStatus.CANCELED.value,
        SubscriptionStatus.EXPIRED.value,
    },
    SubscriptionStatus.PAST_DUE.value: {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.UNPAID.value,
        SubscriptionStatus.CANCELED.value,
        SubscriptionStatus.EXPIRED.value,
    },
    SubscriptionStatus.UNPAID.value: {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.CANCELED.value,
        SubscriptionStatus.EXPIRED.value,
    },
}


class Subscription(Base, TimestampMixin):
    """
    Tracks the subscription state of an account.

    CRITICAL DESIGN:
    - ONE subscription per account (unique account_id)
    - Updated by webhooks, receipts, reconciliation and the trial monitor
    - Activation never moves current_period_end backwards
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    account_id = Column(
        String(36),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="One subscription per account"
    )

    status = Column(
        String(30),
        nullable=False,
        default=SubscriptionStatus.INCOMPLETE.value,
        index=True
    )
    plan = Column(String(20), nullable=True)

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)

    # Provider references
    provider = Column(String(30), nullable=True, comment="mercadopago or apple")
    provider_subscription_id = Column(String(255), nullable=True, index=True)
    provider_customer_id = Column(String(255), nullable=True)
    provider_transaction_id = Column(String(255), nullable=True)
    provider_preference_id = Column(String(255), nullable=True)

    extra_metadata = Column(JSONType, nullable=True, default=dict)

    account = relationship("Account", back_populates="subscription")

    __table_args__ = (
        UniqueConstraint("account_id", name="uq_subscriptions_account"),
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, account_id={self.account_id}, status={self.status})>"

    def can_apply_provider_status(self, new_status: str) -> bool:
        return new_status in PROVIDER_STATUS_TRANSITIONS.get(self.status, set())

    def _now(self, now: Optional[datetime]) -> datetime:
        return now or datetime.now(timezone.utc)

    @property
    def period_end(self) -> Optional[datetime]:
        return as_utc(self.current_period_end)

    @property
    def trial_end_utc(self) -> Optional[datetime]:
        return as_utc(self.trial_end)

    def is_active_at(self, now: Optional[datetime] = None) -> bool:
        """Active or trialing, and the covering period has not ended."""
        if self.status not in ACTIVE_STATUSES:
            return False
        end = self.period_end
        if end is None and self.status == SubscriptionStatus.TRIALING.value:
            end = self.trial_end_utc
        if end is None:
            return False
        return self._now(now) <= end

    def is_in_trial_at(self, now: Optional[datetime] = None) -> bool:
        if self.status != SubscriptionStatus.TRIALING.value:
            return False
        start, end = as_utc(self.trial_start), self.trial_end_utc
        if start is None or end is None:
            return False
        return start <= self._now(now) <= end

    def days_remaining_at(self, now: Optional[datetime] = None) -> int:
        end = self.period_end
        if end is None:
            return 0
        seconds = (end - self._now(now)).total_seconds()
        if seconds <= 0:
            return 0
        return math.ceil(seconds / 86400)

    @property
    def is_active(self) -> bool:
        """Check if subscription currently grants access."""
        return self.is_active_at()

    @property
    def is_in_trial(self) -> bool:
        """Check if subscription is inside its trial window."""
        return self.is_in_trial_at()

    @property
    def days_remaining(self) -> int:
        """Whole days left in the current period, rounded up."""
        return self.days_remaining_at()
