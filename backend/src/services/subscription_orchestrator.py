"""
Subscription orchestrator, the front door of the billing lifecycle.

Handles:
- Checkout creation against Mercado Pago (pending ledger row per intent)
- Provider notifications with idempotency and forward-only transitions
- Cancellation, reactivation and trial grants
- Status, plan and transaction history reads

Webhooks are delivered at least once and out of order. Every notification
is deduplicated on kind:object_id:status, ledger rows only move along
ALLOWED_TRANSITIONS, and activation goes through the shared primitive in
src/services/subscription_activation.py.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.config.payment_settings import PaymentSettings, get_payment_settings
from src.config.subscription_plans import SubscriptionPlanCatalog, get_plan_catalog
from src.integrations.mercadopago.client import (
    MercadoPagoAPIError,
    MercadoPagoClient,
    get_mercadopago_client,
)
from src.integrations.mercadopago.envelope import (
    KIND_PAYMENT,
    KIND_PREAPPROVAL,
    KIND_SUBSCRIPTION,
    KIND_UNKNOWN,
    ProviderEnvelope,
)
from src.models.account import Account, EntitlementStatus
from src.models.base import as_utc, generate_uuid
from src.models.subscription import Subscription, SubscriptionStatus
from src.models.transaction import (
    PaymentProvider,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from src.platform.payment_audit import PaymentAuditEventType, emit_payment_event
from src.repositories.payment_repository import (
    AccountRepository,
    SubscriptionRepository,
    TransactionRepository,
    WebhookEventRepository,
)
from src.services.entitlement_resolver import days_until, resolve_entitlement
from src.services.payment_errors import (
    ConfigurationError,
    NotFoundError,
    ProviderUnavailable,
    ValidationError,
)
from src.services.subscription_activation import (
    activate_from_transaction,
    get_or_create_subscription,
)

logger = logging.getLogger(__name__)

# Mercado Pago payment status -> ledger status
PAYMENT_STATUS_MAP = {
    "approved": TransactionStatus.COMPLETED.value,
    "pending": TransactionStatus.PROCESSING.value,
    "in_process": TransactionStatus.PROCESSING.value,
    "in_mediation": TransactionStatus.PROCESSING.value,
    "authorized": TransactionStatus.PROCESSING.value,
    "rejected": TransactionStatus.FAILED.value,
    "cancelled": TransactionStatus.CANCELED.value,
    "refunded": TransactionStatus.REFUNDED.value,
    "charged_back": TransactionStatus.REFUNDED.value,
}

# Mercado Pago preapproval / subscription status -> Subscription status
SUBSCRIPTION_STATUS_MAP = {
    "authorized": SubscriptionStatus.ACTIVE.value,
    "active": SubscriptionStatus.ACTIVE.value,
    "paused": SubscriptionStatus.PAST_DUE.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "unpaid": SubscriptionStatus.UNPAID.value,
    "pending": SubscriptionStatus.INCOMPLETE.value,
    "cancelled": SubscriptionStatus.CANCELED.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "expired": SubscriptionStatus.EXPIRED.value,
}

# Preapproval status -> ledger status
PREAPPROVAL_TRANSACTION_MAP = {
    "authorized": TransactionStatus.COMPLETED.value,
    "cancelled": TransactionStatus.CANCELED.value,
    "paused": TransactionStatus.CANCELED.value,
}

_TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED.value,
    TransactionStatus.FAILED.value,
    TransactionStatus.REFUNDED.value,
    TransactionStatus.CANCELED.value,
})

_REVOKING_RECORD_STATUSES = frozenset({
    SubscriptionStatus.CANCELED.value,
    SubscriptionStatus.UNPAID.value,
    SubscriptionStatus.EXPIRED.value,
})


@dataclass
class CheckoutResult:
    """Result of checkout creation."""
    transaction_id: str
    intent_id: str
    redirect_url: str
    sandbox_redirect_url: Optional[str] = None
    plan: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    kind: str = KIND_UNKNOWN
    event_key: Optional[str] = None
    transaction_id: Optional[str] = None
    subscription_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "message": self.message,
            "kind": self.kind,
            "transaction_id": self.transaction_id,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
        }


@dataclass
class SubscriptionStatusView:
    """Normalized subscription status for one account."""
    account_id: str
    status: str
    source: str
    plan: Optional[str] = None
    is_active: bool = False
    is_premium: bool = False
    is_trial: bool = False
    trial_expired: bool = False
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    days_remaining: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "status": self.status,
            "source": self.source,
            "plan": self.plan,
            "is_active": self.is_active,
            "is_premium": self.is_premium,
            "is_trial": self.is_trial,
            "trial_expired": self.trial_expired,
            "cancel_at_period_end": self.cancel_at_period_end,
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
            "trial_end": _iso(self.trial_end),
            "days_remaining": self.days_remaining,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def transaction_to_dict(transaction: Transaction) -> Dict[str, Any]:
    """Serialize a ledger row for API responses."""
    return {
        "id": transaction.id,
        "type": transaction.type,
        "amount": transaction.amount,
        "currency": transaction.currency,
        "status": transaction.status,
        "provider": transaction.provider,
        "plan": transaction.plan,
        "description": transaction.description,
        "provider_transaction_id": transaction.provider_transaction_id,
        "created_at": _iso(as_utc(transaction.created_at)),
        "processed_at": _iso(as_utc(transaction.processed_at)),
    }


class SubscriptionOrchestrator:
    """
    Coordinates checkout, provider notifications and subscription changes.

    The orchestrator owns the unit of work: each public operation commits
    its ledger, entitlement and audit writes together.
    """

    def __init__(
        self,
        db_session: Session,
        settings: Optional[PaymentSettings] = None,
        provider_client: Optional[MercadoPagoClient] = None,
        catalog: Optional[SubscriptionPlanCatalog] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            db_session: Database session
            settings: Provider settings (read from the environment if omitted)
            provider_client: Mercado Pago client (created per call if omitted)
            catalog: Plan catalog (process-wide catalog if omitted)
        """
        self.db = db_session
        self.settings = settings or get_payment_settings()
        self.catalog = catalog or get_plan_catalog()
        self._provider_client = provider_client
        self.accounts = AccountRepository(db_session)
        self.subscriptions = SubscriptionRepository(db_session)
        self.transactions = TransactionRepository(db_session)
        self.webhook_events = WebhookEventRepository(db_session)

    @asynccontextmanager
    async def _provider(self):
        if self._provider_client is not None:
            yield self._provider_client
            return
        client = get_mercadopago_client(
            self.settings.mercadopago_access_token,
            timeout_seconds=self.settings.provider_timeout_seconds,
        )
        try:
            yield client
        finally:
            await client.close()

    def _get_account(self, account_id: str) -> Account:
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        return account

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout(
        self,
        account_id: str,
        plan: str,
        return_urls: Optional[Dict[str, str]] = None,
    ) -> CheckoutResult:
        """
        Create a checkout intent and its pending ledger row.

        Args:
            account_id: Paying account
            plan: Plan id (weekly, monthly, quarterly, semestral, yearly)
            return_urls: Optional success / failure / pending overrides

        Returns:
            CheckoutResult with the redirect URL

        Raises:
            ConfigurationError: If the provider access token is not set
            NotFoundError: If the account does not exist
            ValidationError: If the plan is unknown or has no price
            ProviderUnavailable: If the provider call fails
        """
        if not self.settings.mercadopago_configured:
            raise ConfigurationError("Mercado Pago is not configured")

        account = self._get_account(account_id)

        plan_definition = self.catalog.get_plan(plan)
        if plan_definition is None:
            raise ValidationError(f"Unknown plan: {plan}")
        amount = self.catalog.get_price(plan)
        if amount <= 0:
            raise ValidationError(f"No price configured for plan: {plan}")

        return_urls = return_urls or {}
        back_urls = {
            "success": return_urls.get("success") or self.settings.success_url,
            "failure": return_urls.get("failure") or self.settings.cancel_url,
            "pending": return_urls.get("pending") or self.settings.pending_url,
        }
        transaction_id = generate_uuid()
        currency = self.settings.currency

        try:
            async with self._provider() as client:
                intent = await client.create_preference(
                    reference=transaction_id,
                    title=f"Subscription {plan_definition.name}",
                    unit_price=float(amount),
                    currency_id=currency,
                    payer_email=account.email,
                    back_urls=back_urls,
                    notification_url=self.settings.notification_url,
                    metadata={"account_id": account.id, "plan": plan},
                    test_mode=self.settings.mercadopago_test_mode,
                )
        except MercadoPagoAPIError as e:
            emit_payment_event(
                self.db,
                PaymentAuditEventType.CHECKOUT_CREATION_FAILED,
                account_id=account.id,
                plan=plan,
                amount=amount,
                error=str(e),
                provider_status_code=e.status_code,
            )
            self.db.commit()
            logger.error("Checkout creation failed", extra={
                "account_id": account.id,
                "plan": plan,
                "error": str(e),
            })
            if e.status_code == 401:
                raise ConfigurationError("Mercado Pago rejected the access token")
            raise ProviderUnavailable(
                f"Could not create checkout, please try again: {e}",
                provider=PaymentProvider.MERCADOPAGO.value,
            )

        transaction = Transaction(
            id=transaction_id,
            account_id=account.id,
            type=TransactionType.SUBSCRIPTION.value,
            amount=amount,
            currency=currency,
            status=TransactionStatus.PENDING.value,
            provider=PaymentProvider.MERCADOPAGO.value,
            provider_preference_id=intent.intent_id,
            plan=plan,
            description=f"Subscription {plan_definition.name}",
            extra_metadata={"back_urls": back_urls},
        )
        self.db.add(transaction)

        emit_payment_event(
            self.db,
            PaymentAuditEventType.CHECKOUT_CREATED,
            account_id=account.id,
            transaction_id=transaction_id,
            plan=plan,
            amount=amount,
            currency=currency,
            intent_id=intent.intent_id,
        )
        self.db.commit()

        logger.info("Checkout created", extra={
            "account_id": account.id,
            "transaction_id": transaction_id,
            "plan": plan,
            "intent_id": intent.intent_id,
        })

        return CheckoutResult(
            transaction_id=transaction_id,
            intent_id=intent.intent_id,
            redirect_url=intent.redirect_url,
            sandbox_redirect_url=intent.sandbox_redirect_url,
            plan=plan,
            amount=float(amount),
            currency=currency,
        )

    # ------------------------------------------------------------------
    # Provider notifications
    # ------------------------------------------------------------------

    async def _enrich(self, envelope: ProviderEnvelope) -> ProviderEnvelope:
        """Fetch the notified object when the notification carries only its id."""
        if not envelope.needs_enrichment or not self.settings.mercadopago_configured:
            return envelope
        async with self._provider() as client:
            if envelope.kind == KIND_PAYMENT:
                details = await client.get_payment(envelope.object_id)
            else:
                details = await client.get_preapproval(envelope.object_id)
        return envelope.with_details(details)

    async def handle_provider_event(
        self,
        envelope: ProviderEnvelope,
        now: Optional[datetime] = None,
    ) -> WebhookProcessingResult:
        """
        Apply a provider notification.

        Never raises for unmatched or malformed notifications; those are
        audited and acknowledged so the provider does not retry them.

        Args:
            envelope: Parsed notification
            now: Processing instant (defaults to the current UTC time)

        Returns:
            WebhookProcessingResult
        """
        now = now or datetime.now(timezone.utc)

        if envelope.kind == KIND_UNKNOWN or envelope.object_id is None:
            emit_payment_event(
                self.db,
                PaymentAuditEventType.WEBHOOK_UNKNOWN_TYPE,
                source="webhook",
                kind=envelope.kind,
                object_id=envelope.object_id,
                payload=envelope.raw,
            )
            self.db.commit()
            logger.warning("Unhandled webhook notification", extra={
                "kind": envelope.kind,
                "object_id": envelope.object_id,
            })
            return WebhookProcessingResult(
                processed=False,
                message="Unhandled notification type",
                kind=envelope.kind,
                skipped_reason="unknown_type",
            )

        try:
            envelope = await self._enrich(envelope)
        except MercadoPagoAPIError as e:
            emit_payment_event(
                self.db,
                PaymentAuditEventType.WEBHOOK_PROCESSING_ERROR,
                source="webhook",
                kind=envelope.kind,
                object_id=envelope.object_id,
                stage="enrichment",
                error=str(e),
            )
            self.db.commit()
            logger.error("Could not fetch notified object", extra={
                "kind": envelope.kind,
                "object_id": envelope.object_id,
                "error": str(e),
            })
            return WebhookProcessingResult(
                processed=False,
                message="Could not fetch notification details",
                kind=envelope.kind,
                error="enrichment_failed",
            )

        event_key = envelope.event_key
        if self.webhook_events.is_processed(event_key):
            emit_payment_event(
                self.db,
                PaymentAuditEventType.WEBHOOK_DUPLICATE,
                source="webhook",
                event_key=event_key,
            )
            self.db.commit()
            logger.info("Duplicate webhook skipped", extra={"event_key": event_key})
            return WebhookProcessingResult(
                processed=False,
                message="Duplicate webhook - already processed",
                kind=envelope.kind,
                event_key=event_key,
                skipped_reason="duplicate",
            )

        emit_payment_event(
            self.db,
            PaymentAuditEventType.WEBHOOK_RECEIVED,
            source="webhook",
            kind=envelope.kind,
            object_id=envelope.object_id,
            status=envelope.status,
            notification_id=envelope.notification_id,
        )

        try:
            with self.db.begin_nested():
                if envelope.kind == KIND_PAYMENT:
                    result = self._handle_payment(envelope, now)
                elif envelope.kind == KIND_SUBSCRIPTION:
                    result = self._handle_subscription(envelope, now)
                else:
                    result = self._handle_preapproval(envelope, now)
        except Exception as e:
            logger.error("Error processing webhook", extra={
                "event_key": event_key,
                "kind": envelope.kind,
                "error": str(e),
            })
            emit_payment_event(
                self.db,
                PaymentAuditEventType.WEBHOOK_PROCESSING_ERROR,
                source="webhook",
                event_key=event_key,
                stage="dispatch",
                error=str(e),
            )
            self.db.commit()
            return WebhookProcessingResult(
                processed=False,
                message=f"Processing error: {e}",
                kind=envelope.kind,
                event_key=event_key,
                error="processing_error",
            )

        self.webhook_events.record(envelope)
        self.db.commit()

        result.kind = envelope.kind
        result.event_key = event_key
        logger.info("Webhook processed", extra={
            "event_key": event_key,
            "processed": result.processed,
            "transaction_id": result.transaction_id,
        })
        return result

    def _handle_payment(self, envelope: ProviderEnvelope, now: datetime) -> WebhookProcessingResult:
        transaction = self.transactions.find_for_settlement(
            envelope.object_id,
            preference_id=envelope.preference_id,
            external_reference=envelope.external_reference,
        )
        if transaction is None:
            emit_payment_event(
                self.db,
                PaymentAuditEventType.PAYMENT_NOTIFICATION_ORPHAN,
                source="webhook",
                payment_id=envelope.object_id,
                status=envelope.status,
                preference_id=envelope.preference_id,
                external_reference=envelope.external_reference,
            )
            logger.warning("Payment notification has no matching transaction", extra={
                "payment_id": envelope.object_id,
                "preference_id": envelope.preference_id,
            })
            return WebhookProcessingResult(
                processed=False,
                message="No matching transaction",
                skipped_reason="orphan",
            )

        emit_payment_event(
            self.db,
            PaymentAuditEventType.PAYMENT_NOTIFICATION_RECEIVED,
            account_id=transaction.account_id,
            transaction_id=transaction.id,
            source="webhook",
            payment_id=envelope.object_id,
            status=envelope.status,
        )

        if not transaction.provider_transaction_id:
            transaction.provider_transaction_id = envelope.object_id
        elif transaction.provider_transaction_id != envelope.object_id:
            # Another payment attempt against the same checkout intent
            transaction = self._record_new_attempt(transaction, envelope.object_id)

        new_status = PAYMENT_STATUS_MAP.get((envelope.status or "").lower())
        return self._apply_transaction_status(transaction, new_status, envelope.status, now)

    def _record_new_attempt(self, original: Transaction, payment_id: str) -> Transaction:
        attempt = Transaction(
            account_id=original.account_id,
            type=original.type,
            amount=original.amount,
            currency=original.currency,
            status=TransactionStatus.PENDING.value,
            provider=original.provider,
            provider_transaction_id=payment_id,
            provider_preference_id=original.provider_preference_id,
            plan=original.plan,
            description=original.description,
            extra_metadata={"retry_of": original.id},
        )
        self.db.add(attempt)
        self.db.flush()
        logger.info("Recorded new payment attempt for checkout intent", extra={
            "transaction_id": attempt.id,
            "retry_of": original.id,
            "payment_id": payment_id,
        })
        return attempt

    def _apply_transaction_status(
        self,
        transaction: Transaction,
        new_status: Optional[str],
        provider_status: Optional[str],
        now: datetime,
    ) -> WebhookProcessingResult:
        """Move a ledger row forward and activate on first completion."""
        if new_status is None or new_status == transaction.status:
            reason = "unknown_status" if new_status is None else "unchanged"
            if new_status is None:
                emit_payment_event(
                    self.db,
                    PaymentAuditEventType.PAYMENT_TRANSITION_IGNORED,
                    account_id=transaction.account_id,
                    transaction_id=transaction.id,
                    source="webhook",
                    current_status=transaction.status,
                    provider_status=provider_status,
                    reason=reason,
                )
            return WebhookProcessingResult(
                processed=False,
                message=f"No transition for status {provider_status}",
                transaction_id=transaction.id,
                skipped_reason=reason,
            )

        if not transaction.can_transition_to(new_status):
            emit_payment_event(
                self.db,
                PaymentAuditEventType.PAYMENT_TRANSITION_IGNORED,
                account_id=transaction.account_id,
                transaction_id=transaction.id,
                source="webhook",
                current_status=transaction.status,
                requested_status=new_status,
                provider_status=provider_status,
                reason="stale_transition",
            )
            logger.warning("Invalid state transition", extra={
                "transaction_id": transaction.id,
                "from": transaction.status,
                "to": new_status,
            })
            return WebhookProcessingResult(
                processed=False,
                message=f"Ignored transition {transaction.status} -> {new_status}",
                transaction_id=transaction.id,
                skipped_reason="stale_transition",
            )

        previous = transaction.status
        transaction.status = new_status
        if new_status in _TERMINAL_STATUSES:
            transaction.processed_at = now
        if new_status == TransactionStatus.FAILED.value:
            transaction.error_info = {"provider_status": provider_status}
        transaction.merge_metadata(provider_status=provider_status)

        subscription_id = None
        if (
            new_status == TransactionStatus.COMPLETED.value
            and transaction.type == TransactionType.SUBSCRIPTION.value
        ):
            activation = activate_from_transaction(self.db, transaction, now=now, source="webhook")
            subscription_id = activation.subscription.id

        logger.info("Transaction status updated", extra={
            "transaction_id": transaction.id,
            "from": previous,
            "to": new_status,
        })

        return WebhookProcessingResult(
            processed=True,
            message=f"Transaction {previous} -> {new_status}",
            transaction_id=transaction.id,
            subscription_id=subscription_id,
        )

    def _apply_record_status(
        self,
        subscription: Subscription,
        new_status: str,
        now: datetime,
        provider_status: Optional[str] = None,
    ) -> bool:
        """Move the record forward; returns False for a stale notification."""
        if not subscription.can_apply_provider_status(new_status):
            emit_payment_event(
                self.db,
                PaymentAuditEventType.SUBSCRIPTION_TRANSITION_IGNORED,
                account_id=subscription.account_id,
                source="webhook",
                subscription_id=subscription.id,
                current_status=subscription.status,
                requested_status=new_status,
                provider_status=provider_status,
                reason="stale_transition",
            )
            logger.warning("Invalid subscription transition", extra={
                "subscription_id": subscription.id,
                "from": subscription.status,
                "to": new_status,
            })
            return False

        subscription.status = new_status
        if new_status in _REVOKING_RECORD_STATUSES:
            subscription.canceled_at = subscription.canceled_at or now
            subscription.ended_at = now
            subscription.cancel_at_period_end = False
            account = self.accounts.get_by_id(subscription.account_id)
            if account is not None:
                account.apply_snapshot(EntitlementStatus.EXPIRED)
        return True

    def _handle_subscription(self, envelope: ProviderEnvelope, now: datetime) -> WebhookProcessingResult:
        subscription = self.subscriptions.get_by_provider_subscription_id(envelope.object_id)
        if subscription is None:
            emit_payment_event(
                self.db,
                PaymentAuditEventType.SUBSCRIPTION_NOTIFICATION_ORPHAN,
                source="webhook",
                provider_subscription_id=envelope.object_id,
                status=envelope.status,
            )
            return WebhookProcessingResult(
                processed=False,
                message="No matching subscription",
                skipped_reason="orphan",
            )

        new_status = SUBSCRIPTION_STATUS_MAP.get((envelope.status or "").lower())
        emit_payment_event(
            self.db,
            PaymentAuditEventType.SUBSCRIPTION_NOTIFICATION_RECEIVED,
            account_id=subscription.account_id,
            source="webhook",
            provider_subscription_id=envelope.object_id,
            provider_status=envelope.status,
            previous_status=subscription.status,
            new_status=new_status,
        )
        if new_status is None or new_status == subscription.status:
            return WebhookProcessingResult(
                processed=False,
                message=f"No change for status {envelope.status}",
                subscription_id=subscription.id,
                skipped_reason="unchanged" if new_status else "unknown_status",
            )

        if not self._apply_record_status(subscription, new_status, now, provider_status=envelope.status):
            return WebhookProcessingResult(
                processed=False,
                message=f"Ignored transition {subscription.status} -> {new_status}",
                subscription_id=subscription.id,
                skipped_reason="stale_transition",
            )
        return WebhookProcessingResult(
            processed=True,
            message=f"Subscription status set to {new_status}",
            subscription_id=subscription.id,
        )

    def _handle_preapproval(self, envelope: ProviderEnvelope, now: datetime) -> WebhookProcessingResult:
        transaction = self.transactions.find_for_settlement(
            None,
            preference_id=envelope.preapproval_plan_id or envelope.preference_id,
            external_reference=envelope.external_reference,
        )
        if transaction is None:
            emit_payment_event(
                self.db,
                PaymentAuditEventType.PREAPPROVAL_NOTIFICATION_ORPHAN,
                source="webhook",
                preapproval_id=envelope.object_id,
                preapproval_plan_id=envelope.preapproval_plan_id,
                status=envelope.status,
            )
            return WebhookProcessingResult(
                processed=False,
                message="No matching transaction for preapproval",
                skipped_reason="orphan",
            )

        emit_payment_event(
            self.db,
            PaymentAuditEventType.PREAPPROVAL_NOTIFICATION_RECEIVED,
            account_id=transaction.account_id,
            transaction_id=transaction.id,
            source="webhook",
            preapproval_id=envelope.object_id,
            status=envelope.status,
        )

        account = self.accounts.get_by_id(transaction.account_id)
        if (
            account is not None
            and envelope.payer_email
            and account.email
            and envelope.payer_email.lower() != account.email.lower()
        ):
            # Mercado Pago lets the payer log in with another account
            emit_payment_event(
                self.db,
                PaymentAuditEventType.PREAPPROVAL_EMAIL_MISMATCH,
                account_id=account.id,
                transaction_id=transaction.id,
                source="webhook",
                payer_email=envelope.payer_email,
                account_email=account.email,
            )
            logger.warning("Preapproval payer email differs from account email", extra={
                "account_id": account.id,
                "preapproval_id": envelope.object_id,
            })

        provider_status = (envelope.status or "").lower()
        result = self._apply_transaction_status(
            transaction,
            PREAPPROVAL_TRANSACTION_MAP.get(provider_status),
            envelope.status,
            now,
        )

        subscription = self.subscriptions.get_for_account(transaction.account_id)
        if subscription is not None:
            if provider_status == "authorized" and not subscription.provider_subscription_id:
                subscription.provider_subscription_id = envelope.object_id
            elif (
                provider_status in ("cancelled", "paused")
                and subscription.provider_subscription_id == envelope.object_id
                and subscription.status != SUBSCRIPTION_STATUS_MAP[provider_status]
            ):
                if self._apply_record_status(
                    subscription, SUBSCRIPTION_STATUS_MAP[provider_status], now, provider_status=envelope.status
                ):
                    result.processed = True
                    result.subscription_id = subscription.id

        return result

    # ------------------------------------------------------------------
    # Account operations
    # ------------------------------------------------------------------

    def cancel_subscription(
        self,
        account_id: str,
        immediate: bool = False,
        now: Optional[datetime] = None,
    ) -> SubscriptionStatusView:
        """
        Cancel an account's subscription.

        Immediate cancellation ends access now; deferred cancellation keeps
        access until the current period ends.

        Raises:
            NotFoundError: If the account or its subscription does not exist
            ValidationError: If the subscription is already canceled
        """
        now = now or datetime.now(timezone.utc)
        account = self._get_account(account_id)
        subscription = self.subscriptions.get_for_account(account_id)
        if subscription is None:
            raise NotFoundError(f"No subscription for account: {account_id}")
        if subscription.status in (SubscriptionStatus.CANCELED.value, SubscriptionStatus.EXPIRED.value):
            raise ValidationError("Subscription is already canceled")

        previous_status = subscription.status
        if immediate:
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.canceled_at = now
            subscription.ended_at = now
            subscription.cancel_at_period_end = False
            account.apply_snapshot(EntitlementStatus.EXPIRED)
        else:
            subscription.cancel_at_period_end = True
            subscription.canceled_at = now

        emit_payment_event(
            self.db,
            PaymentAuditEventType.SUBSCRIPTION_CANCELED,
            account_id=account_id,
            immediate=immediate,
            previous_status=previous_status,
            period_end=subscription.period_end,
        )
        self.db.commit()

        logger.info("Subscription cancelled", extra={
            "account_id": account_id,
            "subscription_id": subscription.id,
            "immediate": immediate,
        })
        return self.get_status(account_id, now=now)

    def reactivate(self, account_id: str, now: Optional[datetime] = None) -> SubscriptionStatusView:
        """
        Undo a deferred cancellation while the period is still running.

        Raises:
            NotFoundError: If the account or its subscription does not exist
            ValidationError: If there is no pending cancellation to undo
        """
        now = now or datetime.now(timezone.utc)
        self._get_account(account_id)
        subscription = self.subscriptions.get_for_account(account_id)
        if subscription is None:
            raise NotFoundError(f"No subscription for account: {account_id}")
        if not subscription.cancel_at_period_end or not subscription.is_active_at(now):
            raise ValidationError("Subscription cannot be reactivated")

        subscription.cancel_at_period_end = False
        subscription.canceled_at = None

        emit_payment_event(
            self.db,
            PaymentAuditEventType.SUBSCRIPTION_REACTIVATED,
            account_id=account_id,
            period_end=subscription.period_end,
        )
        self.db.commit()
        return self.get_status(account_id, now=now)

    def start_trial(self, account_id: str, now: Optional[datetime] = None) -> SubscriptionStatusView:
        """
        Grant the one-time free trial.

        Raises:
            NotFoundError: If the account does not exist
            ValidationError: If the account already used its trial or is paying
        """
        now = now or datetime.now(timezone.utc)
        account = self._get_account(account_id)
        existing = self.subscriptions.get_for_account(account_id)

        if account.trial_start is not None or (existing is not None and existing.trial_start is not None):
            raise ValidationError("Trial already used")
        if resolve_entitlement(account, existing, now).is_premium:
            raise ValidationError("Account already has an active subscription")

        trial_end = now + timedelta(days=self.settings.trial_days)
        subscription, _ = get_or_create_subscription(self.db, account_id)
        subscription.status = SubscriptionStatus.TRIALING.value
        subscription.trial_start = now
        subscription.trial_end = trial_end
        subscription.current_period_start = now
        subscription.current_period_end = trial_end

        account.entitlement_status = EntitlementStatus.TRIAL.value
        account.trial_start = now
        account.trial_end = trial_end

        emit_payment_event(
            self.db,
            PaymentAuditEventType.TRIAL_STARTED,
            account_id=account_id,
            trial_end=trial_end,
            trial_days=self.settings.trial_days,
        )
        self.db.commit()

        logger.info("Trial started", extra={
            "account_id": account_id,
            "trial_end": trial_end.isoformat(),
        })
        return self.get_status(account_id, now=now)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_status(self, account_id: str, now: Optional[datetime] = None) -> SubscriptionStatusView:
        """
        Read-only merged view of an account's entitlement.

        Raises:
            NotFoundError: If the account does not exist
        """
        now = now or datetime.now(timezone.utc)
        account = self._get_account(account_id)
        subscription = self.subscriptions.get_for_account(account_id)
        view = resolve_entitlement(account, subscription, now)

        remaining_until = view.trial_end if view.is_trial else view.period_end
        return SubscriptionStatusView(
            account_id=account_id,
            status=view.status,
            source=view.source,
            plan=view.plan,
            is_active=view.is_active,
            is_premium=view.is_premium,
            is_trial=view.is_trial,
            trial_expired=view.trial_expired,
            cancel_at_period_end=view.cancel_at_period_end,
            current_period_start=view.period_start,
            current_period_end=view.period_end,
            trial_end=view.trial_end,
            days_remaining=days_until(remaining_until, now) if view.is_active else 0,
        )

    def list_plans(self) -> List[Dict[str, Any]]:
        """Available plans with price, interval and savings vs monthly."""
        plans = list(self.catalog.get_all().values())
        for plan in plans:
            plan["currency"] = self.settings.currency
        return plans

    def list_transactions(
        self,
        account_id: str,
        limit: int = 50,
        skip: int = 0,
        status: Optional[str] = None,
        type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Paginated transaction history for an account."""
        self._get_account(account_id)
        rows = self.transactions.list_for_account(account_id, limit=limit, skip=skip, status=status, type=type)
        return {
            "transactions": [transaction_to_dict(t) for t in rows],
            "total": self.transactions.count_for_account(account_id, status=status, type=type),
            "limit": limit,
            "skip": skip,
        }

    def transaction_stats(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Transaction counts and completed totals for an account."""
        self._get_account(account_id)
        stats = self.transactions.stats_for_account(account_id, start=start, end=end)
        stats["currency"] = self.settings.currency
        return stats


def get_subscription_orchestrator(db_session: Session) -> SubscriptionOrchestrator:
    """Factory function to create a SubscriptionOrchestrator."""
    return SubscriptionOrchestrator(db_session)
