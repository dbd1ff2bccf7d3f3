"""
Subscription access enforcement errors.

The access gate itself lives in src.api.dependencies.subscription_access.
"""

from src.entitlements.errors import EntitlementError, SubscriptionRequiredError

__all__ = ["EntitlementError", "SubscriptionRequiredError"]
