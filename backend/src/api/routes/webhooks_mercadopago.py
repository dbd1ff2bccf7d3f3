"""
Mercado Pago webhook handler.

SECURITY: When MERCADOPAGO_WEBHOOK_SECRET is set, every notification must
carry a valid x-signature header before it is processed. In production an
optional source IP allow-list (MERCADOPAGO_WEBHOOK_IPS) applies as well.

Once authenticated, notifications are always acknowledged with 200 so the
provider does not retry events we chose to ignore.

Documentation: https://www.mercadopago.com/developers/en/docs/your-integrations/notifications/webhooks
"""

import hmac
import hashlib
import json
import logging
from typing import Any, Dict, Mapping, Optional

from fastapi import APIRouter, Request, HTTPException, status, Depends
from pydantic import BaseModel

from src.config.payment_settings import PaymentSettings, get_payment_settings
from src.database.session import get_db_session
from src.integrations.mercadopago.envelope import parse_webhook_envelope
from src.platform.payment_audit import PaymentAuditEventType, emit_payment_event
from src.services.subscription_orchestrator import SubscriptionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

WEBHOOK_SOURCE = "webhook"


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    message: str = "Webhook processed"
    result: Optional[Dict[str, Any]] = None


def parse_signature_header(header: Optional[str]) -> Dict[str, str]:
    """Split 'ts=...,v1=...' into its parts."""
    parts: Dict[str, str] = {}
    if not header:
        return parts
    for chunk in header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def build_signature_manifest(data_id: Optional[str], request_id: Optional[str], ts: str) -> str:
    """The string Mercado Pago signs: id, request id and timestamp."""
    if data_id and data_id.isalnum():
        data_id = data_id.lower()
    return f"id:{data_id or ''};request-id:{request_id or ''};ts:{ts};"


def verify_mercadopago_signature(
    signature_header: Optional[str],
    request_id: Optional[str],
    data_id: Optional[str],
    secret: str,
) -> bool:
    """
    Verify a Mercado Pago webhook signature.

    Args:
        signature_header: x-signature header value (ts=...,v1=...)
        request_id: x-request-id header value
        data_id: Notified object id (data.id)
        secret: Webhook secret from the provider dashboard

    Returns:
        True if the v1 HMAC-SHA256 matches, False otherwise
    """
    parts = parse_signature_header(signature_header)
    ts = parts.get("ts")
    received = parts.get("v1")
    if not ts or not received or not secret:
        return False

    manifest = build_signature_manifest(data_id, request_id, ts)
    computed = hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()

    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(computed, received)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _has_notification_shape(body: Mapping[str, Any], query: Mapping[str, str]) -> bool:
    has_kind = bool(body.get("type") or body.get("action") or body.get("topic")
                    or query.get("type") or query.get("topic"))
    data = body.get("data")
    has_id = bool(
        (isinstance(data, Mapping) and data.get("id"))
        or body.get("id")
        or query.get("data.id")
        or query.get("id")
    )
    return has_kind and has_id


def _data_id(body: Mapping[str, Any], query: Mapping[str, str]) -> Optional[str]:
    if query.get("data.id"):
        return query["data.id"]
    data = body.get("data")
    if isinstance(data, Mapping) and data.get("id") is not None:
        return str(data["id"])
    return query.get("id")


def get_webhook_settings() -> PaymentSettings:
    return get_payment_settings()


@router.post("/mercadopago", response_model=WebhookResponse)
async def handle_mercadopago_webhook(
    request: Request,
    db_session=Depends(get_db_session),
    settings: PaymentSettings = Depends(get_webhook_settings),
):
    """
    Handle a Mercado Pago notification (payment, subscription or preapproval).

    SECURITY: Verifies the signature before processing when a secret is configured.
    """
    client_ip = _client_ip(request)

    if settings.is_production and settings.webhook_allowed_ips and client_ip not in settings.webhook_allowed_ips:
        emit_payment_event(
            db_session,
            PaymentAuditEventType.WEBHOOK_IP_REJECTED,
            source=WEBHOOK_SOURCE,
            client_ip=client_ip,
        )
        db_session.commit()
        logger.warning("Webhook from unlisted IP rejected", extra={"client_ip": client_ip})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Source not allowed")

    raw_body = await request.body()
    body: Dict[str, Any] = {}
    if raw_body:
        try:
            parsed = json.loads(raw_body)
        except json.JSONDecodeError:
            logger.error("Invalid JSON in webhook body")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
        if isinstance(parsed, dict):
            body = parsed
    query = dict(request.query_params)

    if not _has_notification_shape(body, query):
        emit_payment_event(
            db_session,
            PaymentAuditEventType.WEBHOOK_INVALID_STRUCTURE,
            source=WEBHOOK_SOURCE,
            body_keys=sorted(body.keys()),
            query_keys=sorted(query.keys()),
        )
        db_session.commit()
        logger.warning("Webhook missing type/action/id", extra={"body_keys": list(body.keys())})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid notification structure")

    if settings.mercadopago_webhook_secret:
        signature_header = request.headers.get("x-signature")
        request_id = request.headers.get("x-request-id")
        if not signature_header:
            emit_payment_event(
                db_session,
                PaymentAuditEventType.WEBHOOK_MISSING_SIGNATURE,
                source=WEBHOOK_SOURCE,
                client_ip=client_ip,
            )
            db_session.commit()
            logger.warning("Missing signature header in webhook")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing signature")

        if not verify_mercadopago_signature(
            signature_header,
            request_id,
            _data_id(body, query),
            settings.mercadopago_webhook_secret,
        ):
            emit_payment_event(
                db_session,
                PaymentAuditEventType.WEBHOOK_INVALID_SIGNATURE,
                source=WEBHOOK_SOURCE,
                client_ip=client_ip,
                request_id=request_id,
            )
            db_session.commit()
            logger.warning("Invalid webhook signature", extra={"client_ip": client_ip})
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    envelope = parse_webhook_envelope(body, query)
    logger.info("Mercado Pago webhook received", extra={
        "kind": envelope.kind,
        "object_id": envelope.object_id,
        "notification_id": envelope.notification_id,
    })

    orchestrator = SubscriptionOrchestrator(db_session, settings=settings)
    result = await orchestrator.handle_provider_event(envelope)

    return WebhookResponse(message=result.message, result=result.to_dict())
