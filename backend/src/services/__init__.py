"""
Business logic services.
"""

from src.services.subscription_orchestrator import SubscriptionOrchestrator
from src.services.apple_receipt_service import AppleReceiptService
from src.services.payment_reconciliation import PaymentReconciliationScanner
from src.services.payment_recovery import PaymentRecoveryService
from src.services.trial_monitor import TrialMonitor

__all__ = [
    "SubscriptionOrchestrator",
    "AppleReceiptService",
    "PaymentReconciliationScanner",
    "PaymentRecoveryService",
    "TrialMonitor",
]
