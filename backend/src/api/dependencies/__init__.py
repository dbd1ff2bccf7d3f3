"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from src.api.dependencies.subscription_access import (
    AccessContext,
    require_active_subscription,
    require_premium,
)

__all__ = [
    "AccessContext",
    "require_active_subscription",
    "require_premium",
]
