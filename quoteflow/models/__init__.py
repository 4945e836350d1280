"""
Quoteflow SQLAlchemy Models
===========================

Central import point for all ORM models. Import ``Base`` from here for
Alembic auto-generation and for the ``create_all`` convenience in tests.

Usage::

    from quoteflow.models import Base, Proposal, Job, CustomerSession
"""

# -- Base & Mixins --
from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin

# -- Tenancy --
from .tenant import Client, ContractorSettings, Tenant

# -- Proposals --
from .proposal import PricingTier, Proposal, ProposalStatus

# -- Jobs --
from .job import Job, JobStatus

# -- Customer access --
from .access import CustomerSession, MagicLink, OTPVerification

# -- Audit --
from .audit import AuditLog

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    # Tenancy
    "Client",
    "ContractorSettings",
    "Tenant",
    # Proposals
    "PricingTier",
    "Proposal",
    "ProposalStatus",
    # Jobs
    "Job",
    "JobStatus",
    # Customer access
    "CustomerSession",
    "MagicLink",
    "OTPVerification",
    # Audit
    "AuditLog",
]
