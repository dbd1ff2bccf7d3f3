"""
Mercado Pago REST client for checkout preferences and notification lookups.

Uses the Checkout Pro preferences API to create payment intents and the
payments / preapproval APIs to enrich webhook notifications that carry
only an object id.

Documentation: https://www.mercadopago.com/developers/en/reference
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

MERCADOPAGO_API_BASE_URL = "https://api.mercadopago.com"


@dataclass
class PaymentIntent:
    """Checkout preference created at the provider."""
    intent_id: str
    redirect_url: str
    sandbox_redirect_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class MercadoPagoError(Exception):
    """Base exception for Mercado Pago API errors."""
    pass


class MercadoPagoAPIError(MercadoPagoError):
    """Error communicating with Mercado Pago."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response = response
        self.retryable = retryable


class MercadoPagoClient:
    """
    Client for Mercado Pago API operations.

    Handles:
    - Creating checkout preferences (payment intents)
    - Fetching payments and preapprovals by id

    Checkout creation is never retried here; callers surface the
    retryable error to the user.
    """

    def __init__(
        self,
        access_token: str,
        timeout_seconds: float = 10.0,
        base_url: str = MERCADOPAGO_API_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            access_token: Mercado Pago access token (TEST- prefix for sandbox)
            timeout_seconds: Per-request timeout
            base_url: API base URL
            transport: Optional httpx transport (tests)
        """
        if not access_token:
            raise ValueError("access_token is required")

        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=min(5.0, timeout_seconds)),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.access_token}",
            },
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """
        Execute an API request.

        Raises:
            MercadoPagoAPIError: If the API call fails
        """
        url = f"{self.base_url}{path}"
        headers = {}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key

        try:
            response = await self._client.request(method, url, json=json_body, headers=headers)
        except httpx.TimeoutException as e:
            logger.error("Mercado Pago API timeout", extra={"path": path, "error": str(e)})
            raise MercadoPagoAPIError(f"Request timeout: {e}", retryable=True)
        except httpx.RequestError as e:
            logger.error("Mercado Pago API request error", extra={"path": path, "error": str(e)})
            raise MercadoPagoAPIError(f"Request error: {e}", retryable=True)

        if response.status_code == 401:
            logger.error("Mercado Pago authentication failed", extra={"path": path})
            raise MercadoPagoAPIError(
                "Authentication failed - access token may be invalid",
                status_code=401,
            )

        if response.status_code == 404:
            raise MercadoPagoAPIError("Resource not found", status_code=404)

        if response.status_code == 429:
            logger.warning("Mercado Pago API rate limited", extra={"path": path})
            raise MercadoPagoAPIError(
                "Rate limited - please retry after a delay",
                status_code=429,
                retryable=True,
            )

        if response.status_code >= 400:
            logger.error("Mercado Pago API error", extra={
                "path": path,
                "status_code": response.status_code,
                "response_text": response.text[:500],
            })
            try:
                body = response.json() if response.text else None
            except ValueError:
                body = None
            raise MercadoPagoAPIError(
                f"Mercado Pago API error: {response.status_code}",
                status_code=response.status_code,
                response=body,
                retryable=response.status_code >= 500,
            )

        return response.json()

    async def create_preference(
        self,
        reference: str,
        title: str,
        unit_price: float,
        currency_id: str,
        payer_email: Optional[str],
        back_urls: Dict[str, str],
        notification_url: Optional[str] = None,
        metadata: Optional[dict] = None,
        test_mode: bool = False,
    ) -> PaymentIntent:
        """
        Create a checkout preference (payment intent).

        Args:
            reference: Our transaction id, echoed back as external_reference
            title: Item title shown to the payer
            unit_price: Price in currency units
            currency_id: ISO 4217 currency code
            payer_email: Payer email prefilled in checkout
            back_urls: success / failure / pending redirect URLs
            notification_url: Webhook URL for this preference
            metadata: Extra data stored on the preference
            test_mode: Use the sandbox checkout URL

        Returns:
            PaymentIntent with the intent id and redirect URL

        Raises:
            MercadoPagoAPIError: If the API call fails
        """
        body: Dict[str, Any] = {
            "items": [
                {
                    "id": reference,
                    "title": title,
                    "quantity": 1,
                    "unit_price": unit_price,
                    "currency_id": currency_id,
                }
            ],
            "back_urls": back_urls,
            "auto_return": "approved",
            "external_reference": reference,
            "metadata": metadata or {},
        }
        if payer_email:
            body["payer"] = {"email": payer_email}
        if notification_url:
            body["notification_url"] = notification_url

        data = await self._request(
            "POST", "/checkout/preferences", json_body=body, idempotency_key=reference
        )

        intent_id = data.get("id")
        redirect_url = data.get("sandbox_init_point") if test_mode else data.get("init_point")
        redirect_url = redirect_url or data.get("init_point")
        if not intent_id or not redirect_url:
            raise MercadoPagoAPIError(
                "Preference response missing id or init_point", response=data
            )

        logger.info("Mercado Pago preference created", extra={
            "intent_id": intent_id,
            "reference": reference,
        })

        return PaymentIntent(
            intent_id=str(intent_id),
            redirect_url=redirect_url,
            sandbox_redirect_url=data.get("sandbox_init_point"),
            raw=data,
        )

    async def get_payment(self, payment_id: str) -> dict:
        """Fetch a payment by id."""
        return await self._request("GET", f"/v1/payments/{payment_id}")

    async def get_preapproval(self, preapproval_id: str) -> dict:
        """Fetch a preapproval (recurring authorization) by id."""
        return await self._request("GET", f"/preapproval/{preapproval_id}")


def get_mercadopago_client(access_token: str, timeout_seconds: float = 10.0) -> MercadoPagoClient:
    """
    Factory function to create a Mercado Pago client.

    Args:
        access_token: Mercado Pago access token
        timeout_seconds: Per-request timeout

    Returns:
        Configured MercadoPagoClient instance
    """
    return MercadoPagoClient(access_token, timeout_seconds=timeout_seconds)
