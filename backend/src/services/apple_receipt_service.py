"""
App Store receipt processing.

Turns a verifyReceipt response into entitlement: picks the newest
purchase of the requested product, maps the product to a plan, computes
the expiry and writes both entitlement representations plus an apple
ledger row.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.config.payment_settings import PaymentSettings, get_payment_settings
from src.config.subscription_plans import SubscriptionPlanCatalog, get_plan_catalog
from src.integrations.apple.receipt_client import (
    AppleReceiptAPIError,
    AppleReceiptClient,
    ReceiptVerificationResult,
    get_receipt_client,
)
from src.models.account import EntitlementStatus
from src.models.subscription import SubscriptionStatus
from src.models.transaction import (
    PaymentProvider,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from src.platform.payment_audit import PaymentAuditEventType, emit_payment_event
from src.repositories.payment_repository import AccountRepository, TransactionRepository
from src.services.payment_errors import (
    NotFoundError,
    ProviderUnavailable,
    ReceiptInvalid,
    UnknownProduct,
)
from src.services.subscription_activation import get_or_create_subscription

logger = logging.getLogger(__name__)

EXPIRY_SOURCE_PROVIDER = "provider"
EXPIRY_SOURCE_FALLBACK = "plan_duration"


@dataclass
class AppleReceiptResult:
    """Entitlement granted (or not) by one receipt."""
    account_id: str
    transaction_id: str
    plan: str
    product_id: str
    original_transaction_id: Optional[str]
    purchase_date: datetime
    expires_at: datetime
    expiry_source: str
    is_active: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "transaction_id": self.transaction_id,
            "plan": self.plan,
            "product_id": self.product_id,
            "original_transaction_id": self.original_transaction_id,
            "purchase_date": self.purchase_date.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "expiry_source": self.expiry_source,
            "is_active": self.is_active,
        }


def _ms_to_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def select_latest_purchase(transactions: List[Dict[str, Any]], product_id: str) -> Optional[Dict[str, Any]]:
    """
    Pick the newest purchase of a product.

    On equal purchase_date_ms the entry that comes later in provider
    order wins.
    """
    latest = None
    latest_ms = None
    for entry in transactions:
        if entry.get("product_id") != product_id:
            continue
        try:
            purchase_ms = int(entry.get("purchase_date_ms") or 0)
        except (TypeError, ValueError):
            purchase_ms = 0
        if latest is None or purchase_ms >= latest_ms:
            latest, latest_ms = entry, purchase_ms
    return latest


class AppleReceiptService:
    """Service for App Store subscription receipts."""

    def __init__(
        self,
        db_session: Session,
        settings: Optional[PaymentSettings] = None,
        catalog: Optional[SubscriptionPlanCatalog] = None,
        receipt_client: Optional[AppleReceiptClient] = None,
    ):
        self.db = db_session
        self.settings = settings or get_payment_settings()
        self.catalog = catalog or get_plan_catalog()
        self._receipt_client = receipt_client
        self.accounts = AccountRepository(db_session)
        self.transactions = TransactionRepository(db_session)

    @asynccontextmanager
    async def _client(self):
        if self._receipt_client is not None:
            yield self._receipt_client
            return
        client = get_receipt_client(
            self.settings.apple_shared_secret,
            timeout_seconds=self.settings.provider_timeout_seconds,
        )
        try:
            yield client
        finally:
            await client.close()

    async def validate_and_process(
        self,
        account_id: str,
        receipt_data: str,
        product_id: str,
        external_transaction_id: Optional[str] = None,
        sandbox_hint: bool = False,
        now: Optional[datetime] = None,
    ) -> AppleReceiptResult:
        """
        Verify a receipt with Apple and apply it.

        Raises:
            ProviderUnavailable: If Apple cannot be reached
            ReceiptInvalid / UnknownProduct / NotFoundError: See process_subscription_receipt
        """
        if not self.settings.apple_shared_secret:
            logger.warning("APPLE_SHARED_SECRET not set, auto-renewable receipts will not verify")

        try:
            async with self._client() as client:
                verification = await client.validate_receipt(receipt_data, sandbox_hint=sandbox_hint)
        except AppleReceiptAPIError as e:
            raise ProviderUnavailable(
                f"Receipt verification unavailable: {e}",
                provider=PaymentProvider.APPLE.value,
            )

        return self.process_subscription_receipt(
            account_id,
            verification,
            product_id,
            external_transaction_id=external_transaction_id,
            now=now,
        )

    def process_subscription_receipt(
        self,
        account_id: str,
        verification: ReceiptVerificationResult,
        product_id: str,
        external_transaction_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AppleReceiptResult:
        """
        Apply a verified receipt to an account.

        Args:
            account_id: Account the purchase belongs to
            verification: verifyReceipt response
            product_id: Purchased App Store product id
            external_transaction_id: Transaction id reported by the app
            now: Evaluation instant (defaults to the current UTC time)

        Returns:
            AppleReceiptResult

        Raises:
            NotFoundError: If the account does not exist
            ReceiptInvalid: If verification failed, the product is not in the receipt,
                or the purchase is already linked to another account
            UnknownProduct: If the product has no plan mapping
        """
        now = now or datetime.now(timezone.utc)
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")

        if not verification.is_valid:
            self._reject(account_id, product_id, verification.message, verification.status)
            raise ReceiptInvalid(verification.message, status_code=verification.status)

        purchase = select_latest_purchase(verification.transactions, product_id)
        if purchase is None:
            message = f"No purchase of {product_id} in receipt"
            self._reject(account_id, product_id, message, verification.status)
            raise ReceiptInvalid(message, status_code=verification.status)

        plan = self.catalog.plan_for_product(product_id)
        if plan is None:
            self._reject(account_id, product_id, "Unknown product", verification.status)
            raise UnknownProduct(product_id)

        purchase_date = _ms_to_datetime(purchase.get("purchase_date_ms")) or now
        expires_at = _ms_to_datetime(purchase.get("expires_date_ms"))
        expiry_source = EXPIRY_SOURCE_PROVIDER
        if expires_at is None:
            expires_at = purchase_date + timedelta(days=self.catalog.duration_days(plan))
            expiry_source = EXPIRY_SOURCE_FALLBACK
            logger.warning("Receipt has no expiry, using plan duration", extra={
                "account_id": account_id,
                "product_id": product_id,
                "plan": plan,
                "expires_at": expires_at.isoformat(),
            })

        is_active = expires_at > now
        original_transaction_id = (
            purchase.get("original_transaction_id")
            or purchase.get("transaction_id")
            or external_transaction_id
        )
        original_transaction_id = str(original_transaction_id) if original_transaction_id else None

        existing = None
        if original_transaction_id:
            existing = self.transactions.get_by_provider_transaction_id(original_transaction_id)
        if existing is not None and existing.account_id != account_id:
            message = "Receipt purchase is already linked to another account"
            self._reject(account_id, product_id, message, verification.status)
            logger.warning("Apple receipt reused across accounts", extra={
                "account_id": account_id,
                "owner_account_id": existing.account_id,
                "original_transaction_id": original_transaction_id,
            })
            raise ReceiptInvalid(message, status_code=verification.status)

        transaction = self._record_transaction(
            existing, account_id, plan, original_transaction_id, purchase, purchase_date, expires_at,
            expiry_source, verification.environment,
        )
        self._write_entitlement(
            account, transaction, plan, original_transaction_id, purchase_date, expires_at, is_active, now,
        )

        emit_payment_event(
            self.db,
            PaymentAuditEventType.APPLE_RECEIPT_PROCESSED,
            account_id=account_id,
            transaction_id=transaction.id,
            source="receipt",
            product_id=product_id,
            plan=plan,
            environment=verification.environment,
            expires_at=expires_at,
            expiry_source=expiry_source,
            is_active=is_active,
        )
        self.db.commit()

        logger.info("Apple receipt processed", extra={
            "account_id": account_id,
            "plan": plan,
            "is_active": is_active,
            "environment": verification.environment,
        })

        return AppleReceiptResult(
            account_id=account_id,
            transaction_id=transaction.id,
            plan=plan,
            product_id=product_id,
            original_transaction_id=original_transaction_id,
            purchase_date=purchase_date,
            expires_at=expires_at,
            expiry_source=expiry_source,
            is_active=is_active,
        )

    def _reject(self, account_id: str, product_id: str, message: str, status: int) -> None:
        emit_payment_event(
            self.db,
            PaymentAuditEventType.APPLE_RECEIPT_REJECTED,
            account_id=account_id,
            source="receipt",
            product_id=product_id,
            receipt_status=status,
            message=message,
        )
        self.db.commit()

    def _record_transaction(
        self,
        transaction: Optional[Transaction],
        account_id: str,
        plan: str,
        original_transaction_id: Optional[str],
        purchase: Dict[str, Any],
        purchase_date: datetime,
        expires_at: datetime,
        expiry_source: str,
        environment: str,
    ) -> Transaction:
        """Create the apple ledger row, or refresh the account's row for a known original transaction."""
        if transaction is None:
            transaction = Transaction(
                account_id=account_id,
                type=TransactionType.SUBSCRIPTION.value,
                amount=self.catalog.get_price(plan),
                currency=self.settings.currency,
                status=TransactionStatus.COMPLETED.value,
                provider=PaymentProvider.APPLE.value,
                provider_transaction_id=original_transaction_id,
                plan=plan,
                description=f"App Store {plan} subscription",
                processed_at=purchase_date,
                extra_metadata={},
            )
            self.db.add(transaction)

        transaction.merge_metadata(
            latest_transaction_id=purchase.get("transaction_id"),
            expires_at=expires_at.isoformat(),
            expiry_source=expiry_source,
            environment=environment,
        )
        self.db.flush()
        return transaction

    def _write_entitlement(
        self,
        account,
        transaction: Transaction,
        plan: str,
        original_transaction_id: Optional[str],
        purchase_date: datetime,
        expires_at: datetime,
        is_active: bool,
        now: datetime,
    ) -> None:
        subscription, _ = get_or_create_subscription(self.db, account.id)

        if not is_active:
            # Never let an old receipt revoke coverage granted elsewhere
            if subscription.is_active_at(now) and subscription.provider != PaymentProvider.APPLE.value:
                return
            subscription.status = SubscriptionStatus.EXPIRED.value
            subscription.ended_at = expires_at
            account.apply_snapshot(EntitlementStatus.EXPIRED)
            return

        period_end = expires_at
        current_end = subscription.period_end
        if subscription.status == SubscriptionStatus.ACTIVE.value and current_end and current_end > expires_at:
            period_end = current_end

        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.plan = plan
        subscription.current_period_start = purchase_date
        subscription.current_period_end = period_end
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        subscription.ended_at = None
        subscription.provider = PaymentProvider.APPLE.value
        subscription.provider_subscription_id = original_transaction_id
        subscription.provider_transaction_id = original_transaction_id

        account.apply_snapshot(
            EntitlementStatus.PREMIUM,
            plan=plan,
            subscription_start=purchase_date,
            subscription_end=period_end,
            provider=PaymentProvider.APPLE.value,
            provider_transaction_id=original_transaction_id,
        )
        self.db.flush()
        transaction.related_subscription_id = subscription.id


def get_apple_receipt_service(db_session: Session) -> AppleReceiptService:
    """Factory function to create an AppleReceiptService."""
    return AppleReceiptService(db_session)
