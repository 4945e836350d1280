"""
SQLAlchemy model for jobs.
Corresponds to the initial schema revision.

A job is created exactly once per paid proposal; ``quote_id`` is unique and
is the idempotency boundary for deposit verification.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin, enum_values
from .proposal import PricingTier


class JobStatus(str, enum.Enum):
    DEPOSIT_PAID = "deposit_paid"
    SELECTIONS_PENDING = "selections_pending"
    SELECTIONS_COMPLETE = "selections_complete"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CLOSED = "closed"
    CANCELED = "canceled"


class Job(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "jobs"
    __table_args__ = (
        UniqueConstraint("quote_id", name="uq_jobs_quote_id"),
        UniqueConstraint("tenant_id", "job_number", name="uq_jobs_tenant_number"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("clients.id"),
        nullable=False,
    )
    quote_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("quotes.id"),
        nullable=False,
    )
    job_number: Mapped[str] = mapped_column(String(30), nullable=False)
    job_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", values_callable=enum_values),
        nullable=False,
        default=JobStatus.DEPOSIT_PAID,
    )

    # Customer snapshot (copied at creation, not kept in sync)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    job_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    job_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Financial snapshot
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    deposit_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    balance_remaining: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False
    )
    selected_tier: Mapped[Optional[PricingTier]] = mapped_column(
        Enum(PricingTier, name="pricing_tier", values_callable=enum_values),
        nullable=True,
    )

    # Customer selections
    customer_selections_complete: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    customer_selections_submitted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    portal_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<Job(id={self.id}, number={self.job_number}, "
            f"quote={self.quote_id}, status={self.status})>"
        )
