"""
Payment audit queries and transaction integrity checks.

Writes go through src/platform/payment_audit.py; this service reads the
audit trail and checks single transactions against the entitlement
invariant.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.models.transaction import TransactionStatus, TransactionType
from src.platform.payment_audit import PaymentAuditLog
from src.repositories.payment_repository import (
    AccountRepository,
    SubscriptionRepository,
    TransactionRepository,
)
from src.services.payment_reconciliation import has_coverage, paid_until

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    """Result of checking one transaction."""
    valid: bool
    transaction_id: str
    error: Optional[str] = None
    requires_activation: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "transaction_id": self.transaction_id,
            "error": self.error,
            "requires_activation": self.requires_activation,
            "details": self.details,
        }


class PaymentAuditService:
    """Service for audit trail reads and integrity verification."""

    def __init__(self, db_session: Session):
        self.db = db_session
        self.accounts = AccountRepository(db_session)
        self.subscriptions = SubscriptionRepository(db_session)
        self.transactions = TransactionRepository(db_session)

    def verify_transaction_integrity(
        self,
        transaction_id: str,
        now: Optional[datetime] = None,
    ) -> IntegrityReport:
        """
        Check that a transaction is consistent with its account's entitlement.

        A completed subscription payment whose paid period is running must
        be covered by one of the two entitlement representations.

        Args:
            transaction_id: Ledger row to check
            now: Evaluation instant (defaults to the current UTC time)

        Returns:
            IntegrityReport
        """
        now = now or datetime.now(timezone.utc)
        transaction = self.transactions.get_by_id(transaction_id)
        if transaction is None:
            return IntegrityReport(valid=False, transaction_id=transaction_id, error="Transaction not found")

        account = self.accounts.get_by_id(transaction.account_id)
        if account is None:
            return IntegrityReport(
                valid=False,
                transaction_id=transaction_id,
                error="Account not found for transaction",
            )

        details = {
            "account_id": account.id,
            "amount": transaction.amount,
            "status": transaction.status,
            "plan": transaction.plan,
            "provider": transaction.provider,
        }

        if (
            transaction.status == TransactionStatus.COMPLETED.value
            and transaction.type == TransactionType.SUBSCRIPTION.value
        ):
            end = paid_until(transaction)
            subscription = self.subscriptions.get_for_account(account.id)
            if (end is None or end > now) and not has_coverage(account, subscription, now):
                logger.warning("Completed payment without entitlement", extra={
                    "transaction_id": transaction_id,
                    "account_id": account.id,
                })
                return IntegrityReport(
                    valid=False,
                    transaction_id=transaction_id,
                    error="Payment completed but subscription not active",
                    requires_activation=True,
                    details=details,
                )

        return IntegrityReport(valid=True, transaction_id=transaction_id, details=details)

    def list_events(
        self,
        account_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Most recent audit events, newest first."""
        query = self.db.query(PaymentAuditLog)
        if account_id:
            query = query.filter(PaymentAuditLog.account_id == account_id)
        if transaction_id:
            query = query.filter(PaymentAuditLog.transaction_id == transaction_id)
        if event_type:
            query = query.filter(PaymentAuditLog.event_type == event_type)
        rows = query.order_by(PaymentAuditLog.timestamp.desc()).limit(limit).all()
        return [
            {
                "id": row.id,
                "timestamp": row.timestamp.isoformat() if row.timestamp else None,
                "event_type": row.event_type,
                "account_id": row.account_id,
                "transaction_id": row.transaction_id,
                "source": row.source,
                "payload": row.payload,
            }
            for row in rows
        ]


def get_payment_audit_service(db_session: Session) -> PaymentAuditService:
    """Factory function to create a PaymentAuditService."""
    return PaymentAuditService(db_session)
