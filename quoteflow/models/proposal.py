"""
SQLAlchemy model for quotes (customer-facing proposals).
Corresponds to the initial schema revision.

``deposit_verified`` and ``selections_complete`` are derived from ``status``;
the status column is the single source of truth for the proposal lifecycle.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin, enum_values


class ProposalStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    DEPOSIT_PAID = "deposit_paid"
    SELECTIONS_COMPLETE = "selections_complete"
    DECLINED = "declined"


class PricingTier(str, enum.Enum):
    GOOD = "good"
    BETTER = "better"
    BEST = "best"


DEPOSIT_VERIFIED_STATUSES: frozenset[ProposalStatus] = frozenset({
    ProposalStatus.DEPOSIT_PAID,
    ProposalStatus.SELECTIONS_COMPLETE,
})


class Proposal(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "quotes"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    quote_number: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[ProposalStatus] = mapped_column(
        Enum(ProposalStatus, name="proposal_status", values_callable=enum_values),
        nullable=False,
        default=ProposalStatus.DRAFT,
    )

    # Customer snapshot
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    customer_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    job_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Pricing
    base_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    selected_tier: Mapped[Optional[PricingTier]] = mapped_column(
        Enum(PricingTier, name="pricing_tier", values_callable=enum_values),
        nullable=True,
    )
    tier_pricing: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB, nullable=True
    )
    deposit_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    valid_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Deposit payment
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    deposit_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    deposit_payment_method: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True
    )
    deposit_verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Selection portal
    portal_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    portal_opened_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    portal_closed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    selections_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    areas: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, default=list
    )

    # Lifecycle timestamps
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    viewed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    accepted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    declined_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    decline_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def deposit_verified(self) -> bool:
        return self.status in DEPOSIT_VERIFIED_STATUSES

    @property
    def selections_complete(self) -> bool:
        return self.status == ProposalStatus.SELECTIONS_COMPLETE

    def __repr__(self) -> str:
        return (
            f"<Proposal(id={self.id}, number={self.quote_number}, "
            f"status={self.status}, total={self.total})>"
        )
