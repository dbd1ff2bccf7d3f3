"""
Trial lifecycle monitor.

Each pass walks accounts with trial coverage:
- 1 or 2 days left: one notification decision per account per day
- trial end passed while still in trial: downgrade to expired

Runs from the check_trial_expirations cron job, never as an in-process
loop, so several service instances cannot double-fire a pass. The daily
marker on Account.last_trial_notified_on keeps extra runs on the same
day from notifying twice.

Notification delivery is not done here; decisions are handed to a
TrialNotifier.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from src.models.account import Account, EntitlementStatus
from src.models.subscription import Subscription, SubscriptionStatus
from src.platform.payment_audit import PaymentAuditEventType, emit_payment_event
from src.repositories.payment_repository import AccountRepository, SubscriptionRepository
from src.services.entitlement_resolver import days_until
from src.services.payment_errors import NotFoundError

logger = logging.getLogger(__name__)

NOTIFY_DAYS_REMAINING = frozenset({1, 2})


@dataclass
class TrialNotification:
    """Decision to tell an account its trial is about to end."""
    account_id: str
    email: Optional[str]
    days_remaining: int
    trial_end: datetime


class TrialNotifier:
    """
    Receives notification decisions.

    The default implementation only logs; delivery channels subclass it.
    """

    def notify(self, notification: TrialNotification) -> None:
        logger.info("Trial expiration notification", extra={
            "account_id": notification.account_id,
            "days_remaining": notification.days_remaining,
            "trial_end": notification.trial_end.isoformat(),
        })


class TrialMonitorStats:
    """Track trial monitor pass statistics."""

    def __init__(self):
        self.accounts_checked = 0
        self.notifications_sent = 0
        self.trials_expired = 0
        self.errors = 0
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "accounts_checked": self.accounts_checked,
            "notifications_sent": self.notifications_sent,
            "trials_expired": self.trials_expired,
            "errors": self.errors,
            "duration_seconds": duration,
        }


def trial_window(
    account: Account,
    subscription: Optional[Subscription],
) -> Tuple[Optional[datetime], Optional[str]]:
    """
    Trial end of an account, snapshot first and Subscription record second.

    Returns:
        (trial_end, source) or (None, None) when the account has no trial
    """
    if account.entitlement_status == EntitlementStatus.TRIAL.value and account.trial_end_utc:
        return account.trial_end_utc, "snapshot"
    if (
        subscription is not None
        and subscription.status == SubscriptionStatus.TRIALING.value
        and subscription.trial_end_utc
    ):
        return subscription.trial_end_utc, "subscription"
    return None, None


def expire_trial(
    db: Session,
    account: Account,
    subscription: Optional[Subscription],
    now: datetime,
    source: str = "job",
) -> bool:
    """
    Downgrade an account whose trial has ended.

    Only representations still in trial are touched. Not committed here.

    Returns:
        True if anything changed
    """
    changed = False
    if subscription is not None and subscription.status == SubscriptionStatus.TRIALING.value:
        subscription.status = SubscriptionStatus.EXPIRED.value
        subscription.ended_at = subscription.trial_end or now
        changed = True
    if account.entitlement_status == EntitlementStatus.TRIAL.value:
        account.entitlement_status = EntitlementStatus.EXPIRED.value
        changed = True

    if changed:
        emit_payment_event(
            db,
            PaymentAuditEventType.TRIAL_EXPIRED,
            account_id=account.id,
            source=source,
            trial_end=account.trial_end_utc or (subscription.trial_end_utc if subscription else None),
        )
        logger.info("Trial expired", extra={"account_id": account.id, "source": source})
    return changed


class TrialMonitor:
    """Scans trial entitlements near or past their end."""

    def __init__(self, db_session: Session, notifier: Optional[TrialNotifier] = None):
        self.db = db_session
        self.notifier = notifier or TrialNotifier()
        self.accounts = AccountRepository(db_session)
        self.subscriptions = SubscriptionRepository(db_session)

    def run_pass(self, now: Optional[datetime] = None) -> TrialMonitorStats:
        """
        Run one monitor pass.

        Per-account failures are rolled back and counted; the pass continues.
        """
        now = now or datetime.now(timezone.utc)
        stats = TrialMonitorStats()

        for account in self.accounts.list_trial_candidates():
            stats.accounts_checked += 1
            try:
                with self.db.begin_nested():
                    self._check_account(account, now, stats)
                self.db.commit()
            except Exception as e:
                stats.errors += 1
                logger.error("Error checking trial", extra={
                    "account_id": account.id,
                    "error": str(e),
                })

        logger.info("Trial monitor pass completed", extra=stats.to_dict())
        return stats

    def _check_account(self, account: Account, now: datetime, stats: TrialMonitorStats) -> None:
        subscription = self.subscriptions.get_for_account(account.id)
        if subscription is not None and subscription.status == SubscriptionStatus.ACTIVE.value:
            # Converted to a paid plan; the paid flows own this account now
            return

        trial_end, _ = trial_window(account, subscription)
        if trial_end is None:
            return

        if now > trial_end:
            if expire_trial(self.db, account, subscription, now, source="job"):
                stats.trials_expired += 1
            return

        days_remaining = days_until(trial_end, now)
        today = now.date()
        if days_remaining in NOTIFY_DAYS_REMAINING and account.last_trial_notified_on != today:
            self.notifier.notify(TrialNotification(
                account_id=account.id,
                email=account.email,
                days_remaining=days_remaining,
                trial_end=trial_end,
            ))
            account.last_trial_notified_on = today
            emit_payment_event(
                self.db,
                PaymentAuditEventType.TRIAL_EXPIRATION_NOTIFIED,
                account_id=account.id,
                source="job",
                days_remaining=days_remaining,
                trial_end=trial_end,
            )
            stats.notifications_sent += 1

    def get_trial_info(self, account_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Trial state of one account.

        Raises:
            NotFoundError: If the account does not exist
        """
        now = now or datetime.now(timezone.utc)
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        subscription = self.subscriptions.get_for_account(account_id)

        trial_end, _ = trial_window(account, subscription)
        is_in_trial = trial_end is not None and now <= trial_end
        days_remaining = days_until(trial_end, now) if is_in_trial else 0
        return {
            "is_in_trial": is_in_trial,
            "days_remaining": days_remaining,
            "trial_end": trial_end.isoformat() if trial_end else None,
            "should_notify": is_in_trial and days_remaining in NOTIFY_DAYS_REMAINING,
            "trial_used": account.trial_start is not None
            or (subscription is not None and subscription.trial_start is not None),
        }


def get_trial_monitor(db_session: Session, notifier: Optional[TrialNotifier] = None) -> TrialMonitor:
    """Factory function to create a TrialMonitor."""
    return TrialMonitor(db_session, notifier=notifier)
