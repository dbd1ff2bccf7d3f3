"""
Recovery engine for divergent payments.

Repairs what the reconciliation scanner finds by running the shared
activation primitive, and only when entitlement is actually missing so a
period is never extended twice for one payment.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.models.transaction import Transaction, TransactionStatus, TransactionType
from src.platform.payment_audit import PaymentAuditEventType, emit_payment_event
from src.repositories.payment_repository import (
    AccountRepository,
    SubscriptionRepository,
    TransactionRepository,
)
from src.services.payment_errors import NotFoundError, ValidationError
from src.services.payment_reconciliation import (
    DEFAULT_WINDOW_DAYS,
    PaymentReconciliationScanner,
    has_coverage,
)
from src.services.subscription_activation import activate_from_transaction

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    """Outcome of recovering one transaction."""
    transaction_id: str
    account_id: str
    success: bool
    already_active: bool = False
    period_end: Optional[datetime] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "account_id": self.account_id,
            "success": self.success,
            "already_active": self.already_active,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "message": self.message,
        }


@dataclass
class RecoveryReport:
    """Totals for one recovery batch."""
    total: int = 0
    successful: int = 0
    failed: int = 0
    already_active: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    results: List[RecoveryResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "already_active": self.already_active,
            "errors": list(self.errors),
            "results": [r.to_dict() for r in self.results],
        }


class PaymentRecoveryService:
    """Activates entitlement for completed payments that lack it."""

    def __init__(self, db_session: Session, scanner: Optional[PaymentReconciliationScanner] = None):
        self.db = db_session
        self.scanner = scanner or PaymentReconciliationScanner(db_session)
        self.accounts = AccountRepository(db_session)
        self.subscriptions = SubscriptionRepository(db_session)
        self.transactions = TransactionRepository(db_session)

    def _load_recoverable(self, transaction_id: str) -> Transaction:
        transaction = self.transactions.get_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        if transaction.status != TransactionStatus.COMPLETED.value:
            raise ValidationError(
                f"Transaction {transaction_id} is {transaction.status}, not completed"
            )
        if transaction.type != TransactionType.SUBSCRIPTION.value:
            raise ValidationError(f"Transaction {transaction_id} is not a subscription payment")
        return transaction

    def _recover(self, transaction: Transaction, now: datetime, source: str) -> RecoveryResult:
        account = self.accounts.get_by_id(transaction.account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {transaction.account_id}")
        subscription = self.subscriptions.get_for_account(transaction.account_id)

        if has_coverage(account, subscription, now):
            logger.info("Entitlement already active, skipping recovery", extra={
                "transaction_id": transaction.id,
                "account_id": transaction.account_id,
            })
            return RecoveryResult(
                transaction_id=transaction.id,
                account_id=transaction.account_id,
                success=True,
                already_active=True,
                message="Entitlement already active",
            )

        activation = activate_from_transaction(self.db, transaction, now=now, source=source)
        emit_payment_event(
            self.db,
            PaymentAuditEventType.RECOVERED_VIA_RECONCILIATION,
            account_id=transaction.account_id,
            transaction_id=transaction.id,
            source=source,
            plan=transaction.plan,
            period_end=activation.period_end,
            completed_at=transaction.completed_at,
        )
        logger.info("Payment recovered via reconciliation", extra={
            "transaction_id": transaction.id,
            "account_id": transaction.account_id,
            "period_end": activation.period_end.isoformat(),
        })
        return RecoveryResult(
            transaction_id=transaction.id,
            account_id=transaction.account_id,
            success=True,
            period_end=activation.period_end,
            message="Subscription activated",
        )

    def activate_from_transaction(
        self,
        transaction_id: str,
        now: Optional[datetime] = None,
        source: str = "api",
    ) -> RecoveryResult:
        """
        Activate entitlement for one completed subscription payment.

        Args:
            transaction_id: Ledger row to recover
            now: Activation instant (defaults to the current UTC time)
            source: Audit source tag

        Returns:
            RecoveryResult (already_active=True when nothing was needed)

        Raises:
            NotFoundError: If the transaction or its account does not exist
            ValidationError: If the transaction is not a completed subscription payment
        """
        now = now or datetime.now(timezone.utc)
        transaction = self._load_recoverable(transaction_id)
        result = self._recover(transaction, now, source)
        self.db.commit()
        return result

    def process_all_divergent(
        self,
        window_days: int = DEFAULT_WINDOW_DAYS,
        now: Optional[datetime] = None,
        source: str = "job",
    ) -> RecoveryReport:
        """
        Scan for divergence and recover every hit.

        A failing item is rolled back to its savepoint, audited and
        reported; the batch continues.
        """
        now = now or datetime.now(timezone.utc)
        report = RecoveryReport()
        divergent = self.scanner.find_divergent_payments(window_days=window_days, now=now)
        report.total = len(divergent)

        for item in divergent:
            try:
                with self.db.begin_nested():
                    transaction = self._load_recoverable(item.transaction_id)
                    result = self._recover(transaction, now, source)
            except Exception as e:
                report.failed += 1
                report.errors.append({
                    "transaction_id": item.transaction_id,
                    "account_id": item.account_id,
                    "error": str(e),
                })
                emit_payment_event(
                    self.db,
                    PaymentAuditEventType.RECOVERY_FAILED,
                    account_id=item.account_id,
                    transaction_id=item.transaction_id,
                    source=source,
                    error=str(e),
                )
                logger.error("Recovery failed for transaction", extra={
                    "transaction_id": item.transaction_id,
                    "account_id": item.account_id,
                    "error": str(e),
                })
                self.db.commit()
                continue

            self.db.commit()
            report.results.append(result)
            if result.already_active:
                report.already_active += 1
            report.successful += 1

        logger.info("Recovery batch completed", extra={
            "total": report.total,
            "successful": report.successful,
            "failed": report.failed,
        })
        return report


def get_payment_recovery_service(db_session: Session) -> PaymentRecoveryService:
    """Factory function to create a PaymentRecoveryService."""
    return PaymentRecoveryService(db_session)
