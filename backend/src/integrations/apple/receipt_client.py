"""
App Store receipt verification client.

Posts base64 receipts to Apple's verifyReceipt endpoint. A receipt issued
by the sandbox but sent to production answers 21007; the client then
retries exactly once against the sandbox endpoint.

Documentation: https://developer.apple.com/documentation/appstorereceipts/verifyreceipt
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

APPLE_VERIFY_URL_PRODUCTION = "https://buy.itunes.apple.com/verifyReceipt"
APPLE_VERIFY_URL_SANDBOX = "https://sandbox.itunes.apple.com/verifyReceipt"

STATUS_OK = 0
STATUS_SANDBOX_RECEIPT_IN_PRODUCTION = 21007

RECEIPT_STATUS_MESSAGES = {
    21000: "The receipt data is malformed or missing",
    21002: "The receipt data is malformed or missing",
    21003: "The receipt could not be authenticated",
    21004: "The shared secret does not match the account's shared secret",
    21005: "The receipt server is temporarily unavailable",
    21006: "The receipt is valid but the subscription has expired",
    21007: "The receipt is from the sandbox but was sent to production",
    21008: "The receipt is from production but was sent to the sandbox",
    21010: "The receipt could not be authorized",
}


def receipt_status_message(status: int) -> str:
    """Map a verifyReceipt status code to a human readable message."""
    return RECEIPT_STATUS_MESSAGES.get(status, f"Unknown receipt status: {status}")


@dataclass
class ReceiptVerificationResult:
    """Response from verifyReceipt."""
    status: int
    environment: str
    receipt: Dict[str, Any] = field(default_factory=dict)
    latest_receipt_info: List[Dict[str, Any]] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return self.status == STATUS_OK

    @property
    def message(self) -> str:
        return "OK" if self.is_valid else receipt_status_message(self.status)

    @property
    def transactions(self) -> List[Dict[str, Any]]:
        """Embedded transactions; latest_receipt_info preferred over receipt.in_app."""
        if self.latest_receipt_info:
            return list(self.latest_receipt_info)
        return list(self.receipt.get("in_app") or [])


class AppleReceiptAPIError(Exception):
    """Error communicating with the verifyReceipt endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = True


class AppleReceiptClient:
    """
    Client for App Store receipt verification.

    SECURITY: The shared secret is sent only to Apple and never logged.
    """

    def __init__(
        self,
        shared_secret: Optional[str],
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shared_secret = shared_secret
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=min(5.0, timeout_seconds)),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _post_receipt(self, url: str, receipt_data: str) -> dict:
        payload = {
            "receipt-data": receipt_data,
            "exclude-old-transactions": True,
        }
        if self.shared_secret:
            payload["password"] = self.shared_secret

        try:
            response = await self._client.post(url, json=payload)
        except httpx.TimeoutException as e:
            logger.error("Receipt verification timeout", extra={"url": url, "error": str(e)})
            raise AppleReceiptAPIError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error("Receipt verification request error", extra={"url": url, "error": str(e)})
            raise AppleReceiptAPIError(f"Request error: {e}")

        if response.status_code >= 400:
            logger.error("Receipt verification HTTP error", extra={
                "url": url,
                "status_code": response.status_code,
            })
            raise AppleReceiptAPIError(
                f"verifyReceipt HTTP error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError:
            raise AppleReceiptAPIError("verifyReceipt returned a non-JSON body")

    async def validate_receipt(
        self,
        receipt_data: str,
        sandbox_hint: bool = False,
    ) -> ReceiptVerificationResult:
        """
        Verify a receipt.

        Args:
            receipt_data: Base64 encoded receipt
            sandbox_hint: Start with the sandbox endpoint

        Returns:
            ReceiptVerificationResult (status may be non-zero)

        Raises:
            AppleReceiptAPIError: On transport errors or non-JSON responses
        """
        url = APPLE_VERIFY_URL_SANDBOX if sandbox_hint else APPLE_VERIFY_URL_PRODUCTION
        environment = "sandbox" if sandbox_hint else "production"
        data = await self._post_receipt(url, receipt_data)
        status = int(data.get("status", -1))

        if status == STATUS_SANDBOX_RECEIPT_IN_PRODUCTION and not sandbox_hint:
            logger.info("Sandbox receipt sent to production, retrying against sandbox")
            environment = "sandbox"
            data = await self._post_receipt(APPLE_VERIFY_URL_SANDBOX, receipt_data)
            status = int(data.get("status", -1))

        return ReceiptVerificationResult(
            status=status,
            environment=environment,
            receipt=data.get("receipt") or {},
            latest_receipt_info=data.get("latest_receipt_info") or [],
            raw=data,
        )


def get_receipt_client(shared_secret: Optional[str], timeout_seconds: float = 10.0) -> AppleReceiptClient:
    """Factory function to create a receipt verification client."""
    return AppleReceiptClient(shared_secret, timeout_seconds=timeout_seconds)
