"""
Account model with the embedded entitlement snapshot.

The snapshot columns are a compact projection of the account's entitlement.
They are kept in step with the Subscription record by the activation,
cancellation and trial flows; the Subscription record is authoritative when
both exist (see src/services/entitlement_resolver.py).
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, String, Date, DateTime, Index
from sqlalchemy.orm import relationship

from src.models.base import Base, TimestampMixin, generate_uuid, as_utc


class EntitlementStatus(str, Enum):
    """Snapshot status values."""
    FREE = "free"
    TRIAL = "trial"
    PREMIUM = "premium"
    EXPIRED = "expired"


class Account(Base, TimestampMixin):
    """
    A user account that can hold a paid entitlement.

    Authentication lives elsewhere; this table only carries what the
    billing flows need (contact email for provider checkouts and the
    entitlement snapshot).
    """

    __tablename__ = "accounts"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    email = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Account email, sent to the provider as payer email"
    )
    name = Column(String(255), nullable=True)

    # Entitlement snapshot
    entitlement_status = Column(
        String(20),
        nullable=False,
        default=EntitlementStatus.FREE.value,
        index=True,
        comment="free, trial, premium or expired"
    )
    entitlement_plan = Column(String(20), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    subscription_start = Column(DateTime(timezone=True), nullable=True)
    subscription_end = Column(DateTime(timezone=True), nullable=True)
    entitlement_provider = Column(
        String(30),
        nullable=True,
        comment="Provider that granted the current entitlement"
    )
    entitlement_provider_transaction_id = Column(String(255), nullable=True)

    last_trial_notified_on = Column(
        Date,
        nullable=True,
        comment="Day the last trial-expiry notification decision was made"
    )

    subscription = relationship(
        "Subscription",
        back_populates="account",
        uselist=False
    )

    __table_args__ = (
        Index("ix_accounts_status_trial_end", "entitlement_status", "trial_end"),
    )

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, entitlement_status={self.entitlement_status})>"

    @property
    def trial_end_utc(self) -> Optional[datetime]:
        return as_utc(self.trial_end)

    @property
    def subscription_end_utc(self) -> Optional[datetime]:
        return as_utc(self.subscription_end)

    def apply_snapshot(
        self,
        status: EntitlementStatus,
        plan: Optional[str] = None,
        subscription_start: Optional[datetime] = None,
        subscription_end: Optional[datetime] = None,
        provider: Optional[str] = None,
        provider_transaction_id: Optional[str] = None,
    ) -> None:
        """Overwrite the paid part of the snapshot in one place."""
        self.entitlement_status = status.value
        if plan is not None:
            self.entitlement_plan = plan
        if subscription_start is not None:
            self.subscription_start = subscription_start
        if subscription_end is not None:
            self.subscription_end = subscription_end
        if provider is not None:
            self.entitlement_provider = provider
        if provider_transaction_id is not None:
            self.entitlement_provider_transaction_id = provider_transaction_id
