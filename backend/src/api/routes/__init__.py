# API routes
from src.api.routes import health
from src.api.routes import payments
from src.api.routes import webhooks_mercadopago
from src.api.routes import payment_recovery
from src.api.routes import payment_metrics

__all__ = ["health", "payments", "webhooks_mercadopago", "payment_recovery", "payment_metrics"]
