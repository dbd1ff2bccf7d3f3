"""
Payment provider settings read from the environment.

Settings are read on each call to get_payment_settings() so that
workers and tests pick up environment changes without a restart.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from src.config.subscription_plans import get_plan_catalog

DEFAULT_SUCCESS_URL = "http://localhost:3000/subscription/success"
DEFAULT_CANCEL_URL = "http://localhost:3000/subscription/cancel"
DEFAULT_PENDING_URL = "http://localhost:3000/subscription/pending"


@dataclass(frozen=True)
class PaymentSettings:
    """Billing provider, receipt verification and webhook settings."""
    environment: str
    mercadopago_access_token: Optional[str]
    mercadopago_webhook_secret: Optional[str]
    webhook_allowed_ips: List[str] = field(default_factory=list)
    success_url: str = DEFAULT_SUCCESS_URL
    cancel_url: str = DEFAULT_CANCEL_URL
    pending_url: str = DEFAULT_PENDING_URL
    notification_url: Optional[str] = None
    currency: str = "CLP"
    trial_days: int = 3
    provider_timeout_seconds: float = 10.0
    apple_shared_secret: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def mercadopago_configured(self) -> bool:
        return bool(self.mercadopago_access_token)

    @property
    def mercadopago_test_mode(self) -> bool:
        return bool(self.mercadopago_access_token) and self.mercadopago_access_token.startswith("TEST-")


def get_payment_settings() -> PaymentSettings:
    """Build settings from the current environment."""
    catalog = get_plan_catalog()
    allowed_ips = [
        ip.strip()
        for ip in os.getenv("MERCADOPAGO_WEBHOOK_IPS", "").split(",")
        if ip.strip()
    ]
    return PaymentSettings(
        environment=os.getenv("ENV", "development"),
        mercadopago_access_token=os.getenv("MERCADOPAGO_ACCESS_TOKEN") or None,
        mercadopago_webhook_secret=os.getenv("MERCADOPAGO_WEBHOOK_SECRET") or None,
        webhook_allowed_ips=allowed_ips,
        success_url=os.getenv("MERCADOPAGO_SUCCESS_URL", DEFAULT_SUCCESS_URL),
        cancel_url=os.getenv("MERCADOPAGO_CANCEL_URL", DEFAULT_CANCEL_URL),
        pending_url=os.getenv("MERCADOPAGO_PENDING_URL", DEFAULT_PENDING_URL),
        notification_url=os.getenv("MERCADOPAGO_NOTIFICATION_URL") or None,
        currency=catalog.currency,
        trial_days=int(os.getenv("MERCADOPAGO_TRIAL_DAYS", str(catalog.default_trial_days))),
        provider_timeout_seconds=float(os.getenv("MERCADOPAGO_TIMEOUT_SECONDS", "10")),
        apple_shared_secret=os.getenv("APPLE_SHARED_SECRET") or None,
    )
