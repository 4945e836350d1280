"""
SQLAlchemy models for tenants, contractor_settings, and clients.
Corresponds to the initial schema revision.
"""

import uuid
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Tenant(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "tenants"

    company_name: Mapped[str] = mapped_column(String(200), nullable=False)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, company={self.company_name})>"


class ContractorSettings(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Per-tenant knobs for deposits, the selection portal and magic links."""

    __tablename__ = "contractor_settings"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    deposit_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    portal_duration_days: Mapped[int] = mapped_column(
        Integer, nullable=False, default=14
    )
    magic_link_expiry_days: Mapped[int] = mapped_column(
        Integer, nullable=False, default=7
    )
    notification_email: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<ContractorSettings(tenant={self.tenant_id}, "
            f"deposit={self.deposit_percent}%, portal={self.portal_duration_days}d)>"
        )


class Client(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "clients"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Client(id={self.id}, tenant={self.tenant_id}, name={self.name})>"
