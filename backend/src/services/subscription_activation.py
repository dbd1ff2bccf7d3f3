"""
Shared activation primitive.

activate_from_transaction() is the single function that grants a paid
entitlement. Live webhooks, Apple receipts and reconciliation recovery
all go through it, so both entitlement representations always move
together.

Callers decide when activation is warranted (first settlement, or a
detected divergence). The primitive itself never moves an active
period end backwards, so re-applying the same or an older transaction
is harmless.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.config.subscription_plans import plan_period_end
from src.models.account import EntitlementStatus
from src.models.base import as_utc
from src.models.subscription import Subscription, SubscriptionStatus
from src.models.transaction import Transaction
from src.platform.payment_audit import PaymentAuditEventType, emit_payment_event
from src.repositories.payment_repository import AccountRepository, SubscriptionRepository
from src.services.payment_errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class ActivationResult:
    """Outcome of one activation."""
    subscription: Subscription
    period_start: datetime
    period_end: datetime
    created: bool = False
    already_applied: bool = False


def get_or_create_subscription(
    db: Session,
    account_id: str,
) -> Tuple[Subscription, bool]:
    """
    Load the account's Subscription record, inserting it when missing.

    A concurrent insert for the same account loses on the unique
    constraint; the savepoint is rolled back and the winner is returned.
    """
    repository = SubscriptionRepository(db)
    existing = repository.get_for_account(account_id)
    if existing is not None:
        return existing, False

    subscription = Subscription(
        account_id=account_id,
        status=SubscriptionStatus.INCOMPLETE.value,
        cancel_at_period_end=False,
        extra_metadata={},
    )
    try:
        with db.begin_nested():
            db.add(subscription)
        return subscription, True
    except IntegrityError:
        logger.info(
            "Subscription creation race lost, updating existing record",
            extra={"account_id": account_id},
        )
        existing = repository.get_for_account(account_id)
        if existing is None:
            raise
        return existing, False


def activate_from_transaction(
    db: Session,
    transaction: Transaction,
    now: Optional[datetime] = None,
    source: str = "api",
) -> ActivationResult:
    """
    Grant the entitlement paid for by a transaction.

    Args:
        db: Database session (not committed here)
        transaction: Settled transaction carrying account_id and plan
        now: Activation instant (defaults to the current UTC time)
        source: Audit source tag (webhook, job, api, receipt)

    Returns:
        ActivationResult

    Raises:
        NotFoundError: If the transaction's account does not exist
        ValidationError: If the transaction has no known plan
    """
    now = now or datetime.now(timezone.utc)

    account = AccountRepository(db).get_by_id(transaction.account_id)
    if account is None:
        raise NotFoundError(f"Account not found: {transaction.account_id}")

    plan = transaction.plan
    try:
        computed_end = plan_period_end(plan, now)
    except ValueError:
        raise ValidationError(f"Transaction {transaction.id} has no valid plan: {plan}")

    subscription, created = get_or_create_subscription(db, account.id)

    marker = transaction.provider_transaction_id or transaction.id
    was_active = subscription.status == SubscriptionStatus.ACTIVE.value
    already_applied = was_active and subscription.provider_transaction_id == marker

    period_start = now
    period_end = computed_end
    current_end = subscription.period_end
    if current_end is not None and (
        already_applied or (was_active and current_end >= computed_end)
    ):
        period_end = current_end
        period_start = as_utc(subscription.current_period_start) or now

    subscription.status = SubscriptionStatus.ACTIVE.value
    subscription.plan = plan
    subscription.current_period_start = period_start
    subscription.current_period_end = period_end
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    subscription.ended_at = None
    subscription.provider = transaction.provider
    subscription.provider_transaction_id = marker
    if transaction.provider_preference_id:
        subscription.provider_preference_id = transaction.provider_preference_id

    account.apply_snapshot(
        EntitlementStatus.PREMIUM,
        plan=plan,
        subscription_start=period_start,
        subscription_end=period_end,
        provider=transaction.provider,
        provider_transaction_id=marker,
    )

    db.flush()
    transaction.related_subscription_id = subscription.id

    emit_payment_event(
        db,
        PaymentAuditEventType.SUBSCRIPTION_ACTIVATED,
        account_id=account.id,
        transaction_id=transaction.id,
        source=source,
        plan=plan,
        period_start=period_start,
        period_end=period_end,
        created=created,
        already_applied=already_applied,
    )

    logger.info("Subscription activated", extra={
        "account_id": account.id,
        "transaction_id": transaction.id,
        "plan": plan,
        "period_end": period_end.isoformat(),
        "created": created,
    })

    return ActivationResult(
        subscription=subscription,
        period_start=period_start,
        period_end=period_end,
        created=created,
        already_applied=already_applied,
    )
