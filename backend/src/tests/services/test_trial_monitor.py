"""
Tests for the trial monitor.

Tests cover:
- Expiry notifications at 1 and 2 days left, once per account per day
- Downgrade once the trial end has passed
- Converted accounts are left alone
- One failing account does not stop the pass
- get_trial_info
"""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from src.platform.payment_audit import PaymentAuditEventType
from src.repositories.payment_repository import SubscriptionRepository
from src.services.payment_errors import NotFoundError
from src.services.trial_monitor import TrialMonitor, TrialNotifier


@pytest.fixture
def notifier():
    return MagicMock(spec=TrialNotifier)


@pytest.fixture
def monitor(db_session, notifier):
    return TrialMonitor(db_session, notifier=notifier)


class TestNotifications:

    def test_notifies_once_per_day(self, monitor, notifier, make_account, now, audit_events):
        account = make_account(entitlement_status="trial", trial_start=now, trial_end=now + timedelta(hours=36))

        stats = monitor.run_pass(now=now)

        assert stats.notifications_sent == 1
        notification = notifier.notify.call_args.args[0]
        assert notification.account_id == account.id
        assert notification.days_remaining == 2
        assert notification.email == account.email
        assert account.last_trial_notified_on == now.date()

        again = monitor.run_pass(now=now + timedelta(hours=1))
        assert again.notifications_sent == 0
        assert notifier.notify.call_count == 1
        assert len(audit_events(PaymentAuditEventType.TRIAL_EXPIRATION_NOTIFIED, account_id=account.id)) == 1

    def test_next_day_notifies_again(self, monitor, notifier, make_account, now):
        make_account(entitlement_status="trial", trial_end=now + timedelta(hours=36))

        monitor.run_pass(now=now)
        stats = monitor.run_pass(now=now + timedelta(days=1))

        assert stats.notifications_sent == 1
        assert notifier.notify.call_args.args[0].days_remaining == 1

    def test_far_trial_end_is_quiet(self, monitor, notifier, make_account, now):
        make_account(entitlement_status="trial", trial_end=now + timedelta(days=3))

        stats = monitor.run_pass(now=now)

        assert stats.accounts_checked == 1
        assert stats.notifications_sent == 0
        notifier.notify.assert_not_called()

    def test_record_only_trial_is_checked(self, monitor, notifier, make_account, make_subscription, now):
        account = make_account()
        make_subscription(account, status="trialing", trial_start=now, trial_end=now + timedelta(hours=20))

        stats = monitor.run_pass(now=now)

        assert stats.notifications_sent == 1
        assert notifier.notify.call_args.args[0].days_remaining == 1


class TestExpiry:

    def test_expires_past_trial(self, monitor, notifier, make_account, make_subscription, db_session, now, audit_events):
        account = make_account(entitlement_status="trial", trial_end=now - timedelta(seconds=1))
        make_subscription(account, status="trialing", trial_end=now - timedelta(seconds=1))

        stats = monitor.run_pass(now=now)

        assert stats.trials_expired == 1
        notifier.notify.assert_not_called()
        db_session.refresh(account)
        assert account.entitlement_status == "expired"
        assert SubscriptionRepository(db_session).get_for_account(account.id).status == "expired"
        assert len(audit_events(PaymentAuditEventType.TRIAL_EXPIRED, account_id=account.id)) == 1

        assert monitor.run_pass(now=now).trials_expired == 0

    def test_converted_account_is_skipped(self, monitor, notifier, make_account, make_subscription, db_session, now):
        account = make_account(entitlement_status="trial", trial_end=now - timedelta(days=1))
        make_subscription(account, status="active", current_period_end=now + timedelta(days=30))

        stats = monitor.run_pass(now=now)

        assert stats.trials_expired == 0
        db_session.refresh(account)
        assert account.entitlement_status == "trial"


class TestErrorIsolation:

    def test_failing_account_is_counted(self, monitor, notifier, make_account, now):
        broken = make_account(entitlement_status="trial", trial_end=now + timedelta(hours=30))
        healthy = make_account(entitlement_status="trial", trial_end=now + timedelta(hours=30))

        def notify(notification):
            if notification.account_id == broken.id:
                raise RuntimeError("mail relay down")

        notifier.notify.side_effect = notify

        stats = monitor.run_pass(now=now)

        assert stats.accounts_checked == 2
        assert stats.errors == 1
        assert stats.notifications_sent == 1
        assert healthy.last_trial_notified_on == now.date()


class TestGetTrialInfo:

    def test_in_trial(self, monitor, make_account, now):
        account = make_account(entitlement_status="trial", trial_start=now, trial_end=now + timedelta(hours=36))

        info = monitor.get_trial_info(account.id, now=now)

        assert info["is_in_trial"]
        assert info["days_remaining"] == 2
        assert info["should_notify"]
        assert info["trial_used"]

    def test_no_trial(self, monitor, make_account, now):
        account = make_account()

        info = monitor.get_trial_info(account.id, now=now)

        assert not info["is_in_trial"]
        assert info["trial_end"] is None
        assert not info["trial_used"]

    def test_unknown_account(self, monitor, now):
        with pytest.raises(NotFoundError):
            monitor.get_trial_info("00000000-0000-0000-0000-000000000000", now=now)
