"""
Tests for the shared activation primitive.

Tests cover:
- Both entitlement representations move together
- Re-applying the same transaction is harmless
- An active period end never moves backwards
- Missing account and unknown plan errors
- A lost record creation race falls back to the winning row
"""

import pytest
from datetime import datetime, timedelta, timezone

from src.models.subscription import Subscription
from src.platform.payment_audit import PaymentAuditEventType
from src.repositories.payment_repository import SubscriptionRepository
from src.services.payment_errors import NotFoundError, ValidationError
from src.services.subscription_activation import (
    activate_from_transaction,
    get_or_create_subscription,
)


class TestActivateFromTransaction:

    def test_creates_record_and_snapshot(self, db_session, make_account, make_transaction, now, audit_events):
        account = make_account()
        transaction = make_transaction(account, status="completed", provider_transaction_id="pay-1")

        result = activate_from_transaction(db_session, transaction, now=now, source="webhook")

        assert result.created
        assert result.period_end == datetime(2026, 4, 10, 12, tzinfo=timezone.utc)
        subscription = result.subscription
        assert subscription.status == "active"
        assert subscription.plan == "monthly"
        assert subscription.provider_transaction_id == "pay-1"
        assert account.entitlement_status == "premium"
        assert account.entitlement_plan == "monthly"
        assert transaction.related_subscription_id == subscription.id

        events = audit_events(PaymentAuditEventType.SUBSCRIPTION_ACTIVATED, account_id=account.id)
        assert len(events) == 1
        assert events[0].source == "webhook"

    def test_is_idempotent(self, db_session, make_account, make_transaction, now):
        account = make_account()
        transaction = make_transaction(account, status="completed", provider_transaction_id="pay-1")

        first = activate_from_transaction(db_session, transaction, now=now)
        second = activate_from_transaction(db_session, transaction, now=now + timedelta(hours=1))

        assert second.already_applied
        assert not second.created
        assert second.period_end == first.period_end
        assert db_session.query(Subscription).filter(Subscription.account_id == account.id).count() == 1

    def test_never_moves_period_end_backwards(self, db_session, make_account, make_transaction, now):
        account = make_account()
        yearly = make_transaction(account, status="completed", plan="yearly", provider_transaction_id="pay-y")
        weekly = make_transaction(account, status="completed", plan="weekly", provider_transaction_id="pay-w")

        year_result = activate_from_transaction(db_session, yearly, now=now)
        week_result = activate_from_transaction(db_session, weekly, now=now)

        assert week_result.period_end == year_result.period_end
        assert account.subscription_end_utc == year_result.period_end

    def test_reactivates_canceled_record_with_fresh_period(
        self, db_session, make_account, make_subscription, make_transaction, now
    ):
        account = make_account()
        make_subscription(
            account,
            status="canceled",
            current_period_end=now - timedelta(days=2),
            cancel_at_period_end=False,
            canceled_at=now - timedelta(days=10),
        )
        transaction = make_transaction(account, status="completed", plan="weekly", provider_transaction_id="pay-2")

        result = activate_from_transaction(db_session, transaction, now=now)

        assert not result.created
        assert result.subscription.status == "active"
        assert result.subscription.canceled_at is None
        assert result.period_end == now + timedelta(days=7)

    def test_missing_account_raises(self, db_session, make_account, make_transaction, now):
        account = make_account()
        transaction = make_transaction(account, status="completed")
        transaction.account_id = "00000000-0000-0000-0000-000000000000"

        with pytest.raises(NotFoundError):
            activate_from_transaction(db_session, transaction, now=now)

    def test_unknown_plan_raises(self, db_session, make_account, make_transaction, now):
        account = make_account()
        transaction = make_transaction(account, status="completed", plan="lifetime")

        with pytest.raises(ValidationError):
            activate_from_transaction(db_session, transaction, now=now)


class TestGetOrCreateSubscription:

    def test_returns_existing(self, db_session, make_account, make_subscription):
        account = make_account()
        existing = make_subscription(account)

        subscription, created = get_or_create_subscription(db_session, account.id)

        assert subscription.id == existing.id
        assert not created

    def test_creates_incomplete_record(self, db_session, make_account):
        account = make_account()

        subscription, created = get_or_create_subscription(db_session, account.id)

        assert created
        assert subscription.status == "incomplete"
        assert subscription.id is not None

    def test_lost_creation_race_returns_winner(self, db_session, make_account, monkeypatch):
        account = make_account()
        _insert_competing_record(db_session, monkeypatch, account.id)

        subscription, created = get_or_create_subscription(db_session, account.id)

        assert not created
        assert subscription.id == "winner-id"
        assert db_session.query(Subscription).filter(Subscription.account_id == account.id).count() == 1

    def test_activation_after_lost_race_updates_winner(
        self, db_session, make_account, make_transaction, monkeypatch, now
    ):
        account = make_account()
        transaction = make_transaction(account, status="completed", provider_transaction_id="pay-race")
        _insert_competing_record(db_session, monkeypatch, account.id)

        result = activate_from_transaction(db_session, transaction, now=now)

        assert not result.created
        assert result.subscription.id == "winner-id"
        assert result.subscription.status == "active"
        assert result.subscription.provider_transaction_id == "pay-race"
        assert account.entitlement_status == "premium"


def _insert_competing_record(db_session, monkeypatch, account_id: str) -> None:
    """Make the first lookup miss while another writer inserts the record."""
    original = SubscriptionRepository.get_for_account
    state = {"raced": False}

    def racing_lookup(self, lookup_account_id):
        if not state["raced"]:
            state["raced"] = True
            db_session.add(Subscription(
                id="winner-id",
                account_id=account_id,
                status="incomplete",
                cancel_at_period_end=False,
                extra_metadata={},
            ))
            db_session.flush()
            return None
        return original(self, lookup_account_id)

    monkeypatch.setattr(SubscriptionRepository, "get_for_account", racing_lookup)
