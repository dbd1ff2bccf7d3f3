"""
Platform-level modules shared by the API and the cron jobs.

- payment_audit: Append-only payment audit log with PII redaction
- session_auth: Bearer session token verification
"""

from src.platform.payment_audit import (
    PaymentAuditEvent,
    PaymentAuditEventType,
    PaymentAuditLog,
    PIIRedactor,
    emit_payment_event,
    record_payment_event,
)
from src.platform.session_auth import (
    SessionPrincipal,
    SessionTokenVerifier,
    get_operator_principal,
    get_session_principal,
)

__all__ = [
    "PaymentAuditEvent",
    "PaymentAuditEventType",
    "PaymentAuditLog",
    "PIIRedactor",
    "emit_payment_event",
    "record_payment_event",
    "SessionPrincipal",
    "SessionTokenVerifier",
    "get_operator_principal",
    "get_session_principal",
]
