"""
Builders for transient domain objects and query-result stubs used across
the unit and e2e suites.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

from quoteflow.models.proposal import Proposal, ProposalStatus


TENANT_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
CLIENT_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


def scalar_result(value: Any) -> MagicMock:
    """A ``db.execute()`` result whose scalar accessors return ``value``."""
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    result.scalar_one.return_value = value
    return result


def build_proposal(**overrides: Any) -> Proposal:
    """A transient proposal with sensible defaults for a sent $1,000 quote."""
    now = datetime.now(timezone.utc)
    fields: dict[str, Any] = {
        "id": uuid.uuid4(),
        "tenant_id": TENANT_ID,
        "client_id": CLIENT_ID,
        "quote_number": "Q-2026-0001",
        "status": ProposalStatus.SENT,
        "customer_name": "Jane Doe",
        "customer_email": "jane@example.com",
        "customer_phone": "+14165551234",
        "customer_address": "12 Elm St",
        "job_type": "Interior",
        "base_total": Decimal("1000.00"),
        "total": Decimal("1000.00"),
        "valid_until": now + timedelta(days=30),
        "portal_open": False,
        "areas": [
            {"id": "a1", "name": "Living Room"},
            {"id": "a2", "name": "Kitchen"},
        ],
        "sent_at": now - timedelta(days=1),
    }
    fields.update(overrides)
    return Proposal(**fields)
