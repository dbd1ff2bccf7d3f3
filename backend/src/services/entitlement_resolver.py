"""
Entitlement resolution across the Subscription record and the account snapshot.

An account's entitlement is stored twice: the normalized Subscription
record and the snapshot columns on Account. This module is the only place
that decides which one wins:

- The Subscription record is authoritative when it exists and carries a
  usable status (anything except incomplete / incomplete_expired).
- Otherwise the snapshot is used.
- With neither, the account is free.

Status values are normalized to the Subscription vocabulary so callers
see one shape (premium -> active, trial -> trialing).
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.models.account import Account, EntitlementStatus
from src.models.base import as_utc
from src.models.subscription import Subscription, SubscriptionStatus

SOURCE_SUBSCRIPTION = "subscription"
SOURCE_SNAPSHOT = "snapshot"
SOURCE_NONE = "none"

STATUS_FREE = "free"

_UNUSABLE_RECORD_STATUSES = frozenset({
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.INCOMPLETE_EXPIRED.value,
})

_SNAPSHOT_STATUS_MAP = {
    EntitlementStatus.PREMIUM.value: SubscriptionStatus.ACTIVE.value,
    EntitlementStatus.TRIAL.value: SubscriptionStatus.TRIALING.value,
    EntitlementStatus.EXPIRED.value: SubscriptionStatus.EXPIRED.value,
    EntitlementStatus.FREE.value: STATUS_FREE,
}


def days_until(end: Optional[datetime], now: datetime) -> int:
    """Whole days from now until end, rounded up; 0 when past or unset."""
    if end is None:
        return 0
    seconds = (end - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


@dataclass
class EntitlementView:
    """Resolved entitlement of one account at one instant."""
    source: str
    status: str
    raw_status: Optional[str] = None
    plan: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    is_premium: bool = False
    is_trial: bool = False
    trial_expired: bool = False
    cancel_at_period_end: bool = False
    provider: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.is_premium or self.is_trial

    @property
    def needs_trial_downgrade(self) -> bool:
        """Trial has run out but the stored status still says trial."""
        return self.trial_expired and self.status == SubscriptionStatus.TRIALING.value

    def allows(self, allow_trial: bool = True) -> bool:
        return self.is_premium or (allow_trial and self.is_trial)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "status": self.status,
            "plan": self.plan,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "trial_end": self.trial_end.isoformat() if self.trial_end else None,
            "is_active": self.is_active,
            "is_premium": self.is_premium,
            "is_trial": self.is_trial,
            "trial_expired": self.trial_expired,
        }


def _coverage(status: str, period_end, trial_end, now: datetime):
    is_premium = (
        status == SubscriptionStatus.ACTIVE.value
        and period_end is not None
        and now <= period_end
    )
    is_trial = (
        status == SubscriptionStatus.TRIALING.value
        and trial_end is not None
        and now <= trial_end
    )
    trial_expired = (
        status in (SubscriptionStatus.TRIALING.value, SubscriptionStatus.EXPIRED.value)
        and trial_end is not None
        and now > trial_end
    )
    return is_premium, is_trial, trial_expired


def _from_subscription(subscription: Subscription, now: datetime) -> EntitlementView:
    status = subscription.status
    trial_end = subscription.trial_end_utc
    period_end = subscription.period_end
    if period_end is None and status == SubscriptionStatus.TRIALING.value:
        period_end = trial_end
    is_premium, is_trial, trial_expired = _coverage(status, period_end, trial_end, now)
    return EntitlementView(
        source=SOURCE_SUBSCRIPTION,
        status=status,
        raw_status=status,
        plan=subscription.plan,
        period_start=as_utc(subscription.current_period_start),
        period_end=period_end,
        trial_start=as_utc(subscription.trial_start),
        trial_end=trial_end,
        is_premium=is_premium,
        is_trial=is_trial,
        trial_expired=trial_expired,
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        provider=subscription.provider,
    )


def _from_snapshot(account: Account, now: datetime) -> EntitlementView:
    raw_status = account.entitlement_status or EntitlementStatus.FREE.value
    status = _SNAPSHOT_STATUS_MAP.get(raw_status, STATUS_FREE)
    trial_end = account.trial_end_utc
    period_end = account.subscription_end_utc
    if status == SubscriptionStatus.TRIALING.value:
        period_end = trial_end
    is_premium, is_trial, trial_expired = _coverage(status, period_end, trial_end, now)
    return EntitlementView(
        source=SOURCE_SNAPSHOT,
        status=status,
        raw_status=raw_status,
        plan=account.entitlement_plan,
        period_start=as_utc(account.subscription_start),
        period_end=period_end,
        trial_start=as_utc(account.trial_start),
        trial_end=trial_end,
        is_premium=is_premium,
        is_trial=is_trial,
        trial_expired=trial_expired,
        provider=account.entitlement_provider,
    )


def resolve_entitlement(
    account: Optional[Account],
    subscription: Optional[Subscription] = None,
    now: Optional[datetime] = None,
) -> EntitlementView:
    """
    Resolve the effective entitlement of an account.

    Args:
        account: The account (its snapshot is the fallback)
        subscription: The account's Subscription record, if any
        now: Evaluation instant (defaults to the current UTC time)

    Returns:
        EntitlementView
    """
    now = now or datetime.now(timezone.utc)
    if subscription is not None and subscription.status not in _UNUSABLE_RECORD_STATUSES:
        return _from_subscription(subscription, now)
    if account is not None:
        return _from_snapshot(account, now)
    return EntitlementView(source=SOURCE_NONE, status=STATUS_FREE)
