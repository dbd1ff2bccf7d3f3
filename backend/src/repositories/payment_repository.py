"""
Payment repositories for data access operations.

Encapsulates database operations for accounts, subscriptions, the
transaction ledger and processed webhook events with consistent query
patterns. Repositories never commit; the calling service owns the unit
of work.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from src.integrations.mercadopago.envelope import ProviderEnvelope
from src.models.account import Account, EntitlementStatus
from src.models.subscription import Subscription, SubscriptionStatus
from src.models.transaction import Transaction, TransactionStatus, TransactionType
from src.models.webhook_event import ProcessedWebhookEvent

logger = logging.getLogger(__name__)


class AccountRepository:
    """Repository for account data access."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_by_id(self, account_id: str) -> Optional[Account]:
        return self.db.query(Account).filter(Account.id == account_id).first()

    def list_trial_candidates(self) -> List[Account]:
        """
        Accounts with trial coverage in either representation.

        Returns accounts whose snapshot says trial, or whose subscription
        record is trialing.
        """
        return (
            self.db.query(Account)
            .outerjoin(Subscription, Subscription.account_id == Account.id)
            .filter(or_(
                Account.entitlement_status == EntitlementStatus.TRIAL.value,
                Subscription.status == SubscriptionStatus.TRIALING.value,
            ))
            .order_by(Account.id)
            .all()
        )

    def count_by_status(self, status: EntitlementStatus, covering_at: Optional[datetime] = None) -> int:
        query = self.db.query(func.count(Account.id)).filter(
            Account.entitlement_status == status.value
        )
        if covering_at is not None:
            column = Account.trial_end if status == EntitlementStatus.TRIAL else Account.subscription_end
            query = query.filter(column >= covering_at)
        return query.scalar() or 0


class SubscriptionRepository:
    """Repository for subscription data access."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_for_account(self, account_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.account_id == account_id
        ).first()

    def get_by_provider_subscription_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.provider_subscription_id == provider_subscription_id
        ).first()

    def count_by_status(self) -> Dict[str, int]:
        rows = (
            self.db.query(Subscription.status, func.count(Subscription.id))
            .group_by(Subscription.status)
            .all()
        )
        return {status: count for status, count in rows}


class TransactionRepository:
    """Repository for the transaction ledger."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        return self.db.query(Transaction).filter(Transaction.id == transaction_id).first()

    def get_by_provider_transaction_id(self, provider_transaction_id: str) -> Optional[Transaction]:
        return self.db.query(Transaction).filter(
            Transaction.provider_transaction_id == provider_transaction_id
        ).first()

    def get_latest_by_preference_id(self, preference_id: str) -> Optional[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(Transaction.provider_preference_id == preference_id)
            .order_by(Transaction.created_at.desc())
            .first()
        )

    def find_for_settlement(
        self,
        provider_transaction_id: Optional[str],
        preference_id: Optional[str] = None,
        external_reference: Optional[str] = None,
    ) -> Optional[Transaction]:
        """
        Locate the ledger row a provider settlement refers to.

        Lookup order: provider payment id, checkout intent id, then our
        own transaction id echoed back as external_reference.
        """
        if provider_transaction_id:
            transaction = self.get_by_provider_transaction_id(provider_transaction_id)
            if transaction:
                return transaction
        if preference_id:
            transaction = self.get_latest_by_preference_id(preference_id)
            if transaction:
                return transaction
        if external_reference:
            return self.get_by_id(external_reference)
        return None

    def list_completed_subscriptions_since(self, since: datetime) -> List[Transaction]:
        """Completed subscription payments whose completion time is >= since."""
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.status == TransactionStatus.COMPLETED.value,
                Transaction.type == TransactionType.SUBSCRIPTION.value,
                or_(
                    Transaction.processed_at >= since,
                    and_(Transaction.processed_at.is_(None), Transaction.created_at >= since),
                ),
            )
            .order_by(Transaction.created_at)
            .all()
        )

    def list_for_account(
        self,
        account_id: str,
        limit: int = 50,
        skip: int = 0,
        status: Optional[str] = None,
        type: Optional[str] = None,
    ) -> List[Transaction]:
        query = self._account_query(account_id, status, type)
        return (
            query.order_by(Transaction.created_at.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def count_for_account(
        self,
        account_id: str,
        status: Optional[str] = None,
        type: Optional[str] = None,
    ) -> int:
        return self._account_query(account_id, status, type).count()

    def _account_query(self, account_id: str, status: Optional[str], type: Optional[str]):
        query = self.db.query(Transaction).filter(Transaction.account_id == account_id)
        if status:
            query = query.filter(Transaction.status == status)
        if type:
            query = query.filter(Transaction.type == type)
        return query

    def stats_for_account(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Totals per status plus completed amount totals."""
        query = self.db.query(
            Transaction.status,
            func.count(Transaction.id),
            func.coalesce(func.sum(Transaction.amount), 0),
        ).filter(Transaction.account_id == account_id)
        if start:
            query = query.filter(Transaction.created_at >= start)
        if end:
            query = query.filter(Transaction.created_at <= end)

        by_status: Dict[str, int] = {}
        total_count = 0
        completed_amount = 0.0
        completed_count = 0
        for status, count, amount in query.group_by(Transaction.status).all():
            by_status[status] = count
            total_count += count
            if status == TransactionStatus.COMPLETED.value:
                completed_amount = float(amount or 0)
                completed_count = count

        return {
            "total_transactions": total_count,
            "by_status": by_status,
            "total_amount": completed_amount,
            "average_amount": completed_amount / completed_count if completed_count else 0.0,
        }

    def count_by_status(self, since: Optional[datetime] = None) -> Dict[str, int]:
        query = self.db.query(Transaction.status, func.count(Transaction.id))
        if since:
            query = query.filter(Transaction.created_at >= since)
        return {status: count for status, count in query.group_by(Transaction.status).all()}

    def revenue_since(self, since: datetime) -> Dict[str, float]:
        total, average, count = self.db.query(
            func.coalesce(func.sum(Transaction.amount), 0),
            func.coalesce(func.avg(Transaction.amount), 0),
            func.count(Transaction.id),
        ).filter(
            Transaction.status == TransactionStatus.COMPLETED.value,
            Transaction.created_at >= since,
        ).one()
        return {
            "total_revenue": float(total or 0),
            "average_amount": float(average or 0),
            "transaction_count": int(count or 0),
        }


class WebhookEventRepository:
    """Repository for processed webhook events (idempotency)."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def is_processed(self, event_key: str) -> bool:
        existing = self.db.query(ProcessedWebhookEvent).filter(
            ProcessedWebhookEvent.event_key == event_key
        ).first()
        return existing is not None

    def record(self, envelope: ProviderEnvelope) -> ProcessedWebhookEvent:
        event = ProcessedWebhookEvent(
            event_key=envelope.event_key,
            kind=envelope.kind,
            object_id=envelope.object_id,
            payload_hash=envelope.payload_hash,
            processed_at=datetime.now(timezone.utc),
        )
        self.db.add(event)
        return event
