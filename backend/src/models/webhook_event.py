"""
WebhookEvent model for tracking processed billing provider notifications.

Used for idempotency - ensures notifications are processed exactly once.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Index, func

from src.db_base import Base


class ProcessedWebhookEvent(Base):
    """
    Tracks processed provider notifications for deduplication.

    Providers deliver notifications at least once. This table ensures
    each unique (event, status) delivery is applied exactly once.
    """

    __tablename__ = "processed_webhook_events"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    event_key = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="kind:object_id:status of the applied delivery"
    )

    kind = Column(
        String(50),
        nullable=False,
        index=True,
        comment="payment, subscription, preapproval or unknown"
    )

    object_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Provider object the notification refers to"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="When the notification was processed"
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="When the record was created"
    )

    __table_args__ = (
        Index("idx_processed_webhook_events_kind_object", "kind", "object_id"),
    )

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent(id={self.id}, event_key={self.event_key}, kind={self.kind})>"
