"""
Error taxonomy for payment and entitlement services.

User-initiated operations propagate these to the caller; the API layer
maps them to HTTP responses. Webhook handling never lets them escape.
"""

from typing import Optional


class PaymentServiceError(Exception):
    """Base exception for payment service errors."""
    pass


class ConfigurationError(PaymentServiceError):
    """A required provider setting is missing. Fails closed."""
    pass


class NotFoundError(PaymentServiceError):
    """Unknown account, transaction or subscription."""
    pass


class ValidationError(PaymentServiceError):
    """Bad plan, payload or state for the requested operation."""
    pass


class ReceiptInvalid(PaymentServiceError):
    """The receipt verification service rejected the receipt."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UnknownProduct(PaymentServiceError):
    """A store product id has no plan mapping."""

    def __init__(self, product_id: str):
        super().__init__(f"Unknown product: {product_id}")
        self.product_id = product_id


class ProviderUnavailable(PaymentServiceError):
    """Network error or timeout talking to a provider. Retryable."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.retryable = True
