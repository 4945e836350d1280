"""
Shared pytest fixtures for Quoteflow unit tests.

Provides mock database sessions and sample domain objects built from the
production ORM models without requiring a live database connection.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from quoteflow.models.job import Job, JobStatus
from quoteflow.models.proposal import PricingTier, Proposal, ProposalStatus

from tests.factories import build_proposal


# ---------------------------------------------------------------------------
# Database session mock
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db() -> AsyncMock:
    """Async mock of ``AsyncSession``.

    Provides a mock that supports ``db.execute()``, ``db.add()``,
    ``db.flush()``, and ``db.commit()`` out of the box.  Individual tests
    can configure ``mock_db.execute.return_value`` to control query results.
    """
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


# ---------------------------------------------------------------------------
# Proposal fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sent_proposal() -> Proposal:
    return build_proposal()


@pytest.fixture
def accepted_proposal() -> Proposal:
    """Accepted at the 'better' tier: $1,000 total, $500 deposit due."""
    return build_proposal(
        status=ProposalStatus.ACCEPTED,
        selected_tier=PricingTier.BETTER,
        deposit_amount=Decimal("500.00"),
        accepted_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def paid_proposal() -> Proposal:
    """Deposit verified with ``pi_paid``; selection portal open."""
    now = datetime.now(timezone.utc)
    return build_proposal(
        status=ProposalStatus.DEPOSIT_PAID,
        selected_tier=PricingTier.BETTER,
        deposit_amount=Decimal("500.00"),
        deposit_transaction_id="pi_paid",
        deposit_verified_at=now,
        portal_open=True,
        portal_opened_at=now,
        portal_closed_at=now + timedelta(days=14),
    )


@pytest.fixture
def sample_job(paid_proposal: Proposal) -> Job:
    return Job(
        id=uuid.uuid4(),
        tenant_id=paid_proposal.tenant_id,
        client_id=paid_proposal.client_id,
        quote_id=paid_proposal.id,
        job_number="JOB-2026-0001",
        job_name="Jane Doe - Interior Project",
        status=JobStatus.DEPOSIT_PAID,
        customer_name="Jane Doe",
        total_amount=Decimal("1000.00"),
        deposit_amount=Decimal("500.00"),
        deposit_paid=True,
        balance_remaining=Decimal("500.00"),
        customer_selections_complete=False,
    )
