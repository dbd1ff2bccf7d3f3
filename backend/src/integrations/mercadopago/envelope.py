"""
Webhook envelope parsing for Mercado Pago notifications.

Mercado Pago delivers several shapes:
- Webhooks: {"type": "payment", "action": "payment.updated", "data": {"id": "123"}, "id": 987}
- Actions only: {"action": "preapproval.updated", "data": {...}}
- Legacy IPN: empty body with ?topic=payment&id=123

This module only translates shape. It never raises and carries no
business logic; unknown or malformed payloads become kind="unknown".
"""

import hashlib
import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

KIND_PAYMENT = "payment"
KIND_SUBSCRIPTION = "subscription"
KIND_PREAPPROVAL = "preapproval"
KIND_UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProviderEnvelope:
    """Typed view of a provider notification."""
    kind: str
    object_id: Optional[str]
    status: Optional[str] = None
    notification_id: Optional[str] = None
    preference_id: Optional[str] = None
    external_reference: Optional[str] = None
    payer_email: Optional[str] = None
    preapproval_plan_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def needs_enrichment(self) -> bool:
        """Notification carries only an id; details must be fetched."""
        return self.object_id is not None and self.status is None

    @property
    def event_key(self) -> str:
        """Deduplication key for one delivered state of one object."""
        return f"{self.kind}:{self.object_id}:{self.status}"

    @property
    def payload_hash(self) -> str:
        payload_str = json.dumps(self.raw, sort_keys=True, default=str)
        return hashlib.sha256(payload_str.encode()).hexdigest()

    def with_details(self, details: Mapping[str, Any]) -> "ProviderEnvelope":
        """Return a copy filled in from a fetched provider object."""
        return replace(
            self,
            status=_str_or_none(details.get("status")) or self.status,
            preference_id=_str_or_none(
                details.get("preference_id") or details.get("preapproval_plan_id")
            ) or self.preference_id,
            external_reference=_str_or_none(details.get("external_reference")) or self.external_reference,
            payer_email=_str_or_none(
                details.get("payer_email") or (details.get("payer") or {}).get("email")
            ) or self.payer_email,
            preapproval_plan_id=_str_or_none(details.get("preapproval_plan_id")) or self.preapproval_plan_id,
        )


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _normalize_kind(raw_kind: Optional[str]) -> str:
    if not raw_kind:
        return KIND_UNKNOWN
    lowered = raw_kind.lower()
    # preapproval first: "subscription_preapproval" is a preapproval topic
    if "preapproval" in lowered:
        return KIND_PREAPPROVAL
    if "payment" in lowered:
        return KIND_PAYMENT
    if "subscription" in lowered:
        return KIND_SUBSCRIPTION
    return KIND_UNKNOWN


def parse_webhook_envelope(
    payload: Optional[Mapping[str, Any]],
    query_params: Optional[Mapping[str, str]] = None,
) -> ProviderEnvelope:
    """
    Translate a raw notification into a ProviderEnvelope.

    Args:
        payload: Parsed JSON body (may be empty for legacy IPN)
        query_params: Request query parameters

    Returns:
        ProviderEnvelope; kind is "unknown" when the shape is not recognized
    """
    body: Dict[str, Any] = dict(payload) if isinstance(payload, Mapping) else {}
    query = dict(query_params or {})

    action = body.get("action")
    raw_kind = body.get("type")
    if not raw_kind and isinstance(action, str):
        raw_kind = action.split(".")[0]
    if not raw_kind:
        raw_kind = body.get("topic") or query.get("type") or query.get("topic")

    data = body.get("data")
    if not isinstance(data, Mapping):
        data = body if "status" in body else {}

    object_id = _str_or_none(data.get("id"))
    if object_id is None:
        object_id = _str_or_none(query.get("data.id") or query.get("id"))

    notification_id = _str_or_none(body.get("id")) if isinstance(body.get("data"), Mapping) else None

    return ProviderEnvelope(
        kind=_normalize_kind(raw_kind),
        object_id=object_id,
        status=_str_or_none(data.get("status")),
        notification_id=notification_id,
        preference_id=_str_or_none(data.get("preference_id") or data.get("preapproval_plan_id")),
        external_reference=_str_or_none(data.get("external_reference")),
        payer_email=_str_or_none(data.get("payer_email")),
        preapproval_plan_id=_str_or_none(data.get("preapproval_plan_id")),
        raw={"body": body, "query": query},
    )
