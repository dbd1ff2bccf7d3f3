"""
Tests for SubscriptionOrchestrator.

Tests cover:
- Checkout creation and provider failures
- Payment notifications: settlement, idempotency, out-of-order delivery
- Retried payments against one checkout intent
- Orphan, unknown and unfetchable notifications
- Preapproval and subscription notifications
- Cancellation, reactivation and trial grants
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from src.config.payment_settings import PaymentSettings
from src.integrations.mercadopago.client import MercadoPagoAPIError, PaymentIntent
from src.integrations.mercadopago.envelope import parse_webhook_envelope
from src.models.transaction import Transaction
from src.models.webhook_event import ProcessedWebhookEvent
from src.platform.payment_audit import PaymentAuditEventType
from src.repositories.payment_repository import SubscriptionRepository
from src.services.payment_errors import (
    ConfigurationError,
    NotFoundError,
    ProviderUnavailable,
    ValidationError,
)
from src.services.subscription_orchestrator import SubscriptionOrchestrator


@pytest.fixture
def settings():
    return PaymentSettings(
        environment="test",
        mercadopago_access_token="TEST-0000000000000000-000000",
        mercadopago_webhook_secret=None,
        trial_days=3,
    )


@pytest.fixture
def provider_client():
    client = MagicMock()
    client.create_preference = AsyncMock(return_value=PaymentIntent(
        intent_id="pref-123",
        redirect_url="https://sandbox.mercadopago.cl/checkout/v1/redirect?pref_id=pref-123",
        sandbox_redirect_url="https://sandbox.mercadopago.cl/checkout/v1/redirect?pref_id=pref-123",
    ))
    client.get_payment = AsyncMock()
    client.get_preapproval = AsyncMock()
    return client


@pytest.fixture
def orchestrator(db_session, settings, provider_client):
    return SubscriptionOrchestrator(db_session, settings=settings, provider_client=provider_client)


def _payment_notification(payment_id: str, status=None, **data):
    body = {"type": "payment", "action": "payment.updated", "data": {"id": payment_id, **data}}
    if status is not None:
        body["data"]["status"] = status
    return parse_webhook_envelope(body)


# =============================================================================
# Checkout
# =============================================================================


class TestCheckout:

    @pytest.mark.asyncio
    async def test_creates_pending_transaction(self, orchestrator, provider_client, make_account, db_session, monkeypatch):
        monkeypatch.setenv("MERCADOPAGO_PRICE_MONTHLY", "3600")
        account = make_account()

        result = await orchestrator.create_checkout(account.id, "monthly")

        assert result.intent_id == "pref-123"
        assert result.amount == 3600
        assert result.currency == "CLP"
        transaction = db_session.query(Transaction).filter(Transaction.id == result.transaction_id).one()
        assert transaction.status == "pending"
        assert transaction.amount == 3600
        assert transaction.provider_preference_id == "pref-123"

        kwargs = provider_client.create_preference.call_args.kwargs
        assert kwargs["reference"] == result.transaction_id
        assert kwargs["payer_email"] == account.email
        assert kwargs["test_mode"] is True

    @pytest.mark.asyncio
    async def test_unknown_plan(self, orchestrator, make_account):
        account = make_account()
        with pytest.raises(ValidationError):
            await orchestrator.create_checkout(account.id, "lifetime")

    @pytest.mark.asyncio
    async def test_unknown_account(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.create_checkout("00000000-0000-0000-0000-000000000000", "monthly")

    @pytest.mark.asyncio
    async def test_not_configured(self, db_session, provider_client, make_account):
        settings = PaymentSettings(environment="test", mercadopago_access_token=None, mercadopago_webhook_secret=None)
        orchestrator = SubscriptionOrchestrator(db_session, settings=settings, provider_client=provider_client)
        account = make_account()

        with pytest.raises(ConfigurationError):
            await orchestrator.create_checkout(account.id, "monthly")
        provider_client.create_preference.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_no_ledger_row(self, orchestrator, provider_client, make_account, db_session, audit_events):
        account = make_account()
        provider_client.create_preference.side_effect = MercadoPagoAPIError("boom", status_code=500, retryable=True)

        with pytest.raises(ProviderUnavailable):
            await orchestrator.create_checkout(account.id, "monthly")

        assert db_session.query(Transaction).filter(Transaction.account_id == account.id).count() == 0
        assert len(audit_events(PaymentAuditEventType.CHECKOUT_CREATION_FAILED, account_id=account.id)) == 1

    @pytest.mark.asyncio
    async def test_rejected_token_is_configuration_error(self, orchestrator, provider_client, make_account):
        account = make_account()
        provider_client.create_preference.side_effect = MercadoPagoAPIError("unauthorized", status_code=401)

        with pytest.raises(ConfigurationError):
            await orchestrator.create_checkout(account.id, "monthly")


# =============================================================================
# Payment notifications
# =============================================================================


class TestPaymentNotifications:

    @pytest.mark.asyncio
    async def test_checkout_then_approved_payment_activates(
        self, orchestrator, provider_client, make_account, db_session, now, monkeypatch
    ):
        monkeypatch.setenv("MERCADOPAGO_PRICE_MONTHLY", "3600")
        account = make_account()
        checkout = await orchestrator.create_checkout(account.id, "monthly")
        provider_client.get_payment.return_value = {
            "id": "pay-1",
            "status": "approved",
            "preference_id": "pref-123",
            "external_reference": checkout.transaction_id,
        }

        result = await orchestrator.handle_provider_event(_payment_notification("pay-1"), now=now)

        assert result.processed
        provider_client.get_payment.assert_awaited_once_with("pay-1")
        transaction = db_session.query(Transaction).filter(Transaction.id == checkout.transaction_id).one()
        assert transaction.status == "completed"
        assert transaction.provider_transaction_id == "pay-1"

        subscription = SubscriptionRepository(db_session).get_for_account(account.id)
        assert subscription.status == "active"
        assert subscription.period_end == datetime(2026, 4, 10, 12, tzinfo=timezone.utc)
        db_session.refresh(account)
        assert account.entitlement_status == "premium"

    @pytest.mark.asyncio
    async def test_repeated_delivery_is_a_noop(
        self, orchestrator, make_account, make_transaction, db_session, now, audit_events
    ):
        account = make_account()
        make_transaction(account, provider_preference_id="pref-9")
        envelope = _payment_notification("pay-9", status="approved", preference_id="pref-9")

        first = await orchestrator.handle_provider_event(envelope, now=now)
        second = await orchestrator.handle_provider_event(envelope, now=now + timedelta(minutes=5))

        assert first.processed
        assert not second.processed
        assert second.skipped_reason == "duplicate"
        assert db_session.query(Transaction).filter(Transaction.account_id == account.id).count() == 1
        assert len(audit_events(PaymentAuditEventType.SUBSCRIPTION_ACTIVATED, account_id=account.id)) == 1
        assert db_session.query(ProcessedWebhookEvent).filter(
            ProcessedWebhookEvent.event_key == "payment:pay-9:approved"
        ).count() == 1

    @pytest.mark.asyncio
    async def test_late_pending_after_approved_is_ignored(
        self, orchestrator, make_account, make_transaction, db_session, now, audit_events
    ):
        account = make_account()
        transaction = make_transaction(account, provider_preference_id="pref-2")

        await orchestrator.handle_provider_event(
            _payment_notification("pay-2", status="approved", preference_id="pref-2"), now=now
        )
        late = await orchestrator.handle_provider_event(
            _payment_notification("pay-2", status="in_process"), now=now
        )

        assert not late.processed
        assert late.skipped_reason == "stale_transition"
        db_session.refresh(transaction)
        assert transaction.status == "completed"
        assert audit_events(PaymentAuditEventType.PAYMENT_TRANSITION_IGNORED, account_id=account.id)

    @pytest.mark.asyncio
    async def test_retry_after_rejection_creates_new_attempt(
        self, orchestrator, make_account, make_transaction, db_session, now
    ):
        account = make_account()
        original = make_transaction(account, provider_preference_id="pref-3")

        rejected = await orchestrator.handle_provider_event(
            _payment_notification("pay-3a", status="rejected", preference_id="pref-3"), now=now
        )
        approved = await orchestrator.handle_provider_event(
            _payment_notification("pay-3b", status="approved", preference_id="pref-3"), now=now
        )

        assert rejected.processed
        assert approved.processed
        assert approved.transaction_id != original.id
        db_session.refresh(original)
        assert original.status == "failed"
        attempt = db_session.query(Transaction).filter(Transaction.id == approved.transaction_id).one()
        assert attempt.status == "completed"
        assert attempt.extra_metadata["retry_of"] == original.id

    @pytest.mark.asyncio
    async def test_refund_keeps_entitlement(self, orchestrator, make_account, make_transaction, db_session, now):
        account = make_account()
        make_transaction(account, provider_preference_id="pref-4")
        await orchestrator.handle_provider_event(
            _payment_notification("pay-4", status="approved", preference_id="pref-4"), now=now
        )

        result = await orchestrator.handle_provider_event(_payment_notification("pay-4", status="refunded"), now=now)

        assert result.processed
        subscription = SubscriptionRepository(db_session).get_for_account(account.id)
        assert subscription.status == "active"

    @pytest.mark.asyncio
    async def test_orphan_payment_is_acknowledged(self, orchestrator, now, audit_events):
        result = await orchestrator.handle_provider_event(
            _payment_notification("pay-x", status="approved", preference_id="pref-none"), now=now
        )

        assert not result.processed
        assert result.skipped_reason == "orphan"
        assert len(audit_events(PaymentAuditEventType.PAYMENT_NOTIFICATION_ORPHAN)) >= 1

    @pytest.mark.asyncio
    async def test_unknown_type_is_acknowledged(self, orchestrator, now, audit_events):
        envelope = parse_webhook_envelope({"type": "merchant_order", "data": {"id": "mo-1"}})

        result = await orchestrator.handle_provider_event(envelope, now=now)

        assert not result.processed
        assert result.skipped_reason == "unknown_type"
        assert audit_events(PaymentAuditEventType.WEBHOOK_UNKNOWN_TYPE)

    @pytest.mark.asyncio
    async def test_enrichment_failure_is_not_recorded(self, orchestrator, provider_client, db_session, now):
        provider_client.get_payment.side_effect = MercadoPagoAPIError("timeout", retryable=True)

        result = await orchestrator.handle_provider_event(_payment_notification("pay-5"), now=now)

        assert result.error == "enrichment_failed"
        assert db_session.query(ProcessedWebhookEvent).filter(
            ProcessedWebhookEvent.object_id == "pay-5"
        ).count() == 0


# =============================================================================
# Preapproval and subscription notifications
# =============================================================================


class TestRecurringNotifications:

    @pytest.mark.asyncio
    async def test_authorized_preapproval_activates_and_links(
        self, orchestrator, make_account, make_transaction, db_session, now, audit_events
    ):
        account = make_account(email="owner@example.com")
        transaction = make_transaction(account, provider_preference_id="plan-1")
        envelope = parse_webhook_envelope({
            "type": "subscription_preapproval",
            "data": {
                "id": "pre-1",
                "status": "authorized",
                "preapproval_plan_id": "plan-1",
                "payer_email": "someone-else@example.com",
            },
        })

        result = await orchestrator.handle_provider_event(envelope, now=now)

        assert result.processed
        db_session.refresh(transaction)
        assert transaction.status == "completed"
        subscription = SubscriptionRepository(db_session).get_for_account(account.id)
        assert subscription.status == "active"
        assert subscription.provider_subscription_id == "pre-1"
        assert audit_events(PaymentAuditEventType.PREAPPROVAL_EMAIL_MISMATCH, account_id=account.id)

    @pytest.mark.asyncio
    async def test_cancelled_subscription_revokes(
        self, orchestrator, make_account, make_subscription, db_session, now
    ):
        account = make_account(entitlement_status="premium", subscription_end=now + timedelta(days=20))
        make_subscription(
            account,
            status="active",
            provider_subscription_id="pre-2",
            current_period_end=now + timedelta(days=20),
        )
        envelope = parse_webhook_envelope({"type": "subscription", "data": {"id": "pre-2", "status": "cancelled"}})

        result = await orchestrator.handle_provider_event(envelope, now=now)

        assert result.processed
        subscription = SubscriptionRepository(db_session).get_for_account(account.id)
        assert subscription.status == "canceled"
        db_session.refresh(account)
        assert account.entitlement_status == "expired"

    @pytest.mark.asyncio
    async def test_late_pending_does_not_downgrade_active_record(
        self, orchestrator, make_account, make_subscription, db_session, now, audit_events
    ):
        account = make_account()
        make_subscription(
            account,
            status="active",
            provider_subscription_id="sub-1",
            current_period_end=now + timedelta(days=20),
        )
        envelope = parse_webhook_envelope({"type": "subscription", "data": {"id": "sub-1", "status": "pending"}})

        result = await orchestrator.handle_provider_event(envelope, now=now)

        assert not result.processed
        assert result.skipped_reason == "stale_transition"
        subscription = SubscriptionRepository(db_session).get_for_account(account.id)
        assert subscription.status == "active"
        ignored = audit_events(PaymentAuditEventType.SUBSCRIPTION_TRANSITION_IGNORED, account_id=account.id)
        assert ignored[0].payload["reason"] == "stale_transition"

    @pytest.mark.asyncio
    async def test_late_authorized_does_not_revive_canceled_record(
        self, orchestrator, make_account, make_subscription, db_session, now
    ):
        account = make_account(entitlement_status="premium", subscription_end=now + timedelta(days=20))
        make_subscription(
            account,
            status="active",
            provider_subscription_id="sub-2",
            current_period_end=now + timedelta(days=20),
        )

        canceled = await orchestrator.handle_provider_event(
            parse_webhook_envelope({"type": "subscription", "data": {"id": "sub-2", "status": "cancelled"}}),
            now=now,
        )
        late = await orchestrator.handle_provider_event(
            parse_webhook_envelope({"type": "subscription", "data": {"id": "sub-2", "status": "authorized"}}),
            now=now + timedelta(minutes=5),
        )

        assert canceled.processed
        assert late.skipped_reason == "stale_transition"
        subscription = SubscriptionRepository(db_session).get_for_account(account.id)
        assert subscription.status == "canceled"
        db_session.refresh(account)
        assert account.entitlement_status == "expired"

    @pytest.mark.asyncio
    async def test_past_due_record_recovers_on_authorized(
        self, orchestrator, make_account, make_subscription, db_session, now
    ):
        account = make_account()
        make_subscription(
            account,
            status="past_due",
            provider_subscription_id="sub-3",
            current_period_end=now + timedelta(days=20),
        )

        result = await orchestrator.handle_provider_event(
            parse_webhook_envelope({"type": "subscription", "data": {"id": "sub-3", "status": "authorized"}}),
            now=now,
        )

        assert result.processed
        assert SubscriptionRepository(db_session).get_for_account(account.id).status == "active"


# =============================================================================
# Account operations
# =============================================================================


class TestAccountOperations:

    def test_deferred_cancel_then_reactivate(self, orchestrator, make_account, make_subscription, now):
        account = make_account()
        make_subscription(account, current_period_start=now, current_period_end=now + timedelta(days=10))

        canceled = orchestrator.cancel_subscription(account.id, now=now)
        assert canceled.cancel_at_period_end
        assert canceled.is_premium

        reactivated = orchestrator.reactivate(account.id, now=now)
        assert not reactivated.cancel_at_period_end
        assert reactivated.days_remaining == 10

    def test_immediate_cancel_ends_access(self, orchestrator, make_account, make_subscription, now):
        account = make_account(entitlement_status="premium", subscription_end=now + timedelta(days=10))
        make_subscription(account, current_period_end=now + timedelta(days=10))

        view = orchestrator.cancel_subscription(account.id, immediate=True, now=now)

        assert view.status == "canceled"
        assert not view.is_active

    def test_cancel_twice_is_rejected(self, orchestrator, make_account, make_subscription, now):
        account = make_account()
        make_subscription(account, status="canceled")
        with pytest.raises(ValidationError):
            orchestrator.cancel_subscription(account.id, now=now)

    def test_reactivate_without_pending_cancel(self, orchestrator, make_account, make_subscription, now):
        account = make_account()
        make_subscription(account, current_period_end=now + timedelta(days=10))
        with pytest.raises(ValidationError):
            orchestrator.reactivate(account.id, now=now)

    def test_trial_is_granted_once(self, orchestrator, make_account, now, audit_events):
        account = make_account()

        view = orchestrator.start_trial(account.id, now=now)

        assert view.status == "trialing"
        assert view.is_trial
        assert view.trial_end == now + timedelta(days=3)
        assert audit_events(PaymentAuditEventType.TRIAL_STARTED, account_id=account.id)
        with pytest.raises(ValidationError):
            orchestrator.start_trial(account.id, now=now + timedelta(days=5))

    def test_status_of_free_account(self, orchestrator, make_account, now):
        account = make_account()
        view = orchestrator.get_status(account.id, now=now)
        assert view.status == "free"
        assert view.days_remaining == 0

    def test_transactions_and_stats(self, orchestrator, make_account, make_transaction):
        account = make_account()
        make_transaction(account, status="completed", amount=3600, processed_at=datetime.now(timezone.utc))
        make_transaction(account, status="failed", amount=3600)

        history = orchestrator.list_transactions(account.id, limit=10)
        stats = orchestrator.transaction_stats(account.id)

        assert history["total"] == 2
        assert len(history["transactions"]) == 2
        assert stats["total_transactions"] == 2
        assert stats["total_amount"] == 3600
        assert stats["currency"] == "CLP"

    def test_plans_listing(self, orchestrator):
        plans = {plan["id"]: plan for plan in orchestrator.list_plans()}
        assert plans["monthly"]["currency"] == "CLP"
        assert "weekly" in plans
