"""
Payment audit logging.

CRITICAL REQUIREMENTS:
- Audit rows are append-only (no UPDATE/DELETE)
- Every entitlement transition and every access decision writes an event
- PII fields are redacted before persistence
- Failed logging attempts fall back to a secondary logger and never
  crash the request, webhook or job that emitted them

Rows are added to the caller's session and become durable with the
caller's commit, so an audit row is never persisted for work that was
rolled back.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, FrozenSet, Optional

from sqlalchemy import Column, String, DateTime, Index
from sqlalchemy.orm import Session

from src.models.base import Base, JSONType

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("payment_audit.fallback")


class PaymentAuditEventType(str, Enum):
    """Auditable payment and entitlement events."""
    # Checkout
    CHECKOUT_CREATED = "CHECKOUT_CREATED"
    CHECKOUT_CREATION_FAILED = "CHECKOUT_CREATION_FAILED"

    # Webhooks
    WEBHOOK_RECEIVED = "WEBHOOK_RECEIVED"
    WEBHOOK_DUPLICATE = "WEBHOOK_DUPLICATE"
    WEBHOOK_UNKNOWN_TYPE = "WEBHOOK_UNKNOWN_TYPE"
    WEBHOOK_INVALID_STRUCTURE = "WEBHOOK_INVALID_STRUCTURE"
    WEBHOOK_INVALID_SIGNATURE = "WEBHOOK_INVALID_SIGNATURE"
    WEBHOOK_MISSING_SIGNATURE = "WEBHOOK_MISSING_SIGNATURE"
    WEBHOOK_IP_REJECTED = "WEBHOOK_IP_REJECTED"
    WEBHOOK_PROCESSING_ERROR = "WEBHOOK_PROCESSING_ERROR"
    PAYMENT_NOTIFICATION_RECEIVED = "PAYMENT_NOTIFICATION_RECEIVED"
    PAYMENT_NOTIFICATION_ORPHAN = "PAYMENT_NOTIFICATION_ORPHAN"
    PAYMENT_TRANSITION_IGNORED = "PAYMENT_TRANSITION_IGNORED"
    SUBSCRIPTION_NOTIFICATION_RECEIVED = "SUBSCRIPTION_NOTIFICATION_RECEIVED"
    SUBSCRIPTION_NOTIFICATION_ORPHAN = "SUBSCRIPTION_NOTIFICATION_ORPHAN"
    SUBSCRIPTION_TRANSITION_IGNORED = "SUBSCRIPTION_TRANSITION_IGNORED"
    PREAPPROVAL_NOTIFICATION_RECEIVED = "PREAPPROVAL_NOTIFICATION_RECEIVED"
    PREAPPROVAL_NOTIFICATION_ORPHAN = "PREAPPROVAL_NOTIFICATION_ORPHAN"
    PREAPPROVAL_EMAIL_MISMATCH = "PREAPPROVAL_EMAIL_MISMATCH"

    # Entitlement lifecycle
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_ACTIVATION_FAILED = "SUBSCRIPTION_ACTIVATION_FAILED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"
    TRIAL_STARTED = "TRIAL_STARTED"
    TRIAL_EXPIRATION_NOTIFIED = "TRIAL_EXPIRATION_NOTIFIED"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    APPLE_RECEIPT_PROCESSED = "APPLE_RECEIPT_PROCESSED"
    APPLE_RECEIPT_REJECTED = "APPLE_RECEIPT_REJECTED"

    # Reconciliation
    RECOVERED_VIA_RECONCILIATION = "RECOVERED_VIA_RECONCILIATION"
    RECOVERY_FAILED = "RECOVERY_FAILED"

    # Access gate
    ACCESS_GRANTED = "ACCESS_GRANTED"
    ACCESS_DENIED = "ACCESS_DENIED"


class PIIRedactor:
    """
    Redacts PII fields from audit payloads before persistence.

    Redacted fields are replaced with "[REDACTED]" to maintain
    structure while removing sensitive data. Emails keep their domain.
    """

    REDACTED_FIELDS: FrozenSet[str] = frozenset({
        "email",
        "payer_email",
        "user_email",
        "account_email",
        "phone",
        "token",
        "access_token",
        "password",
        "secret",
        "shared_secret",
        "receipt_data",
        "card_token",
        "card_number",
        "cvv",
    })

    REDACTION_MARKER = "[REDACTED]"

    @classmethod
    def redact(cls, data: dict[str, Any]) -> dict[str, Any]:
        """
        Recursively redact PII from a dictionary.

        Args:
            data: Dictionary potentially containing PII

        Returns:
            New dictionary with PII fields redacted
        """
        if not isinstance(data, dict):
            return data
        return cls._redact_dict(data)

    @classmethod
    def _redact_dict(cls, d: dict[str, Any]) -> dict[str, Any]:
        result = {}
        for key, value in d.items():
            lower_key = str(key).lower()
            if lower_key in cls.REDACTED_FIELDS:
                result[key] = cls._redact_value(lower_key, value)
            elif isinstance(value, dict):
                result[key] = cls._redact_dict(value)
            elif isinstance(value, list):
                result[key] = [
                    cls._redact_dict(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                result[key] = value
        return result

    @classmethod
    def _redact_value(cls, key: str, value: Any) -> str:
        if isinstance(value, str) and key.endswith("email") and "@" in value:
            return f"***@{value.split('@', 1)[1]}"
        return cls.REDACTION_MARKER


def _json_safe(value: Any) -> Any:
    """Convert datetimes, dates, decimals and enums into JSON-friendly values."""
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    return value


class PaymentAuditLog(Base):
    """
    Payment audit log database model.

    CRITICAL: This table is append-only.
    """
    __tablename__ = "payment_audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    timestamp = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    event_type = Column(String(64), nullable=False, index=True)
    account_id = Column(String(36), nullable=True, index=True)  # NULL for orphan events
    transaction_id = Column(String(36), nullable=True, index=True)
    payload = Column(JSONType, nullable=False, default=dict)
    source = Column(String(20), nullable=False, default="api")  # api, webhook, job, gate

    __table_args__ = (
        Index("ix_payment_audit_logs_account_timestamp", "account_id", "timestamp"),
        Index("ix_payment_audit_logs_type_timestamp", "event_type", "timestamp"),
    )


@dataclass
class PaymentAuditEvent:
    """
    Audit event data structure.

    PII in the payload is redacted before persistence.
    """
    event_type: PaymentAuditEventType
    account_id: Optional[str] = None
    transaction_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    source: str = "api"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to column values with PII redaction."""
        return {
            "event_type": self.event_type.value
            if isinstance(self.event_type, PaymentAuditEventType) else self.event_type,
            "account_id": self.account_id,
            "transaction_id": self.transaction_id,
            "payload": PIIRedactor.redact(_json_safe(self.payload)),
            "source": self.source,
            "timestamp": self.timestamp,
        }


def record_payment_event(db: Session, event: PaymentAuditEvent) -> Optional[PaymentAuditLog]:
    """
    Add an audit event to the session.

    The row is persisted by the caller's commit. On failure the event is
    written to the fallback logger and None is returned.

    Args:
        db: SQLAlchemy Session
        event: The audit event to write

    Returns:
        The pending PaymentAuditLog, or None if fallback was used
    """
    audit_id = str(uuid.uuid4())
    try:
        values = event.to_dict()
        audit_log = PaymentAuditLog(id=audit_id, **values)
        db.add(audit_log)

        logger.info(
            "Payment audit event recorded",
            extra={
                "audit_id": audit_id,
                "event_type": values["event_type"],
                "account_id": event.account_id,
                "transaction_id": event.transaction_id,
                "source": event.source,
            }
        )
        return audit_log
    except Exception as e:
        _write_fallback_log(event, audit_id, str(e))
        return None


def _write_fallback_log(event: PaymentAuditEvent, audit_id: str, error_reason: str) -> None:
    """Write audit event to fallback logger when the primary sink fails."""
    try:
        payload = PIIRedactor.redact(_json_safe(event.payload))
    except Exception:
        payload = {"unserializable": True}

    fallback_entry = {
        "event_id": audit_id,
        "event_type": getattr(event.event_type, "value", event.event_type),
        "account_id": event.account_id,
        "transaction_id": event.transaction_id,
        "timestamp": event.timestamp.isoformat(),
        "source": event.source,
        "payload": payload,
        "fallback_reason": error_reason,
    }
    fallback_logger.error(
        "Payment audit log fallback",
        extra={"audit_entry": json.dumps(fallback_entry, default=str)},
    )


def emit_payment_event(
    db: Session,
    event_type: PaymentAuditEventType,
    account_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    source: str = "api",
    **payload: Any,
) -> Optional[PaymentAuditLog]:
    """Shorthand used by services: build and record an event in one call."""
    return record_payment_event(
        db,
        PaymentAuditEvent(
            event_type=event_type,
            account_id=account_id,
            transaction_id=transaction_id,
            payload=payload,
            source=source,
        ),
    )
