"""
Structured error classes for subscription access enforcement.
"""

from typing import Optional
from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class SubscriptionRequiredError(EntitlementError):
    """
    Raised when the access gate denies a request.

    Carries the current status and the trial-expired flag so clients can
    drive an upgrade prompt.
    """

    def __init__(
        self,
        current_status: str,
        trial_expired: bool = False,
        premium_only: bool = False,
        plan: Optional[str] = None,
        http_status: int = status.HTTP_403_FORBIDDEN,
    ):
        """
        Initialize subscription required error.

        Args:
            current_status: Resolved entitlement status (active, trialing, expired, free, ...)
            trial_expired: The account's trial has run out
            premium_only: The route does not accept trial access
            plan: Current plan (if any)
            http_status: HTTP status code (default 403)
        """
        self.current_status = current_status
        self.trial_expired = trial_expired
        self.premium_only = premium_only
        self.plan = plan
        self.http_status = http_status
        super().__init__(f"Subscription required (status: {current_status})")

    @property
    def code(self) -> str:
        """Machine-readable reason code."""
        if self.trial_expired:
            return "trial_expired"
        if self.premium_only and self.current_status == "trialing":
            return "premium_required"
        if self.current_status == "canceled":
            return "subscription_canceled"
        if self.current_status in ("expired", "past_due", "unpaid"):
            return "subscription_expired"
        return "subscription_required"

    @property
    def message(self) -> str:
        if self.trial_expired:
            return "Your free trial has ended. Subscribe to keep using premium features."
        if self.premium_only and self.current_status == "trialing":
            return "This feature is available to paid subscribers only."
        return "An active subscription is required to use this feature."

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "subscription_required",
            "code": self.code,
            "message": self.message,
            "current_status": self.current_status,
            "trial_expired": self.trial_expired,
            "requires_subscription": True,
        }
