"""
Mercado Pago integration module.
"""

from src.integrations.mercadopago.client import MercadoPagoClient, MercadoPagoAPIError
from src.integrations.mercadopago.envelope import ProviderEnvelope, parse_webhook_envelope

__all__ = [
    "MercadoPagoClient",
    "MercadoPagoAPIError",
    "ProviderEnvelope",
    "parse_webhook_envelope",
]
