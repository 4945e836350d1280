"""
E2E: Accepting and declining proposals, and creating the deposit payment.

The base total of the linked proposal is $1,000 and the tenant's deposit is
50%, so the tiers are 850/425, 1000/500 and 1150/575.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import AsyncClient

from quoteflow.models import PricingTier, Proposal, ProposalStatus
from tests.e2e.conftest import (
    API,
    PROPOSAL_ID,
    TENANT_ID,
    accept,
    fetch,
    open_session,
    set_fields,
)


pytestmark = pytest.mark.asyncio


class TestAccept:

    async def test_accept_better_tier(self, client: AsyncClient, seeded_db):
        headers = await open_session(client)
        data = await accept(client, headers, "better")

        assert data["selected_tier"] == "better"
        assert Decimal(data["total"]) == Decimal("1000.00")
        assert Decimal(data["deposit_amount"]) == Decimal("500.00")
        tiers = {row["tier"]: row for row in data["tiers"]}
        assert Decimal(tiers["good"]["total"]) == Decimal("850.00")
        assert Decimal(tiers["best"]["deposit"]) == Decimal("575.00")
        assert Decimal(tiers["best"]["balance"]) == Decimal("575.00")
        assert data["proposal"]["status"] == "accepted"

        proposal = await fetch(seeded_db, Proposal, PROPOSAL_ID)
        assert proposal.status == ProposalStatus.ACCEPTED
        assert proposal.selected_tier == PricingTier.BETTER
        assert proposal.deposit_amount == Decimal("500.00")
        assert proposal.total == Decimal("1000.00")
        assert proposal.viewed_at is not None
        assert proposal.tier_pricing["better"] == {"total": "1000.00", "deposit": "500.00"}

    async def test_accept_twice_is_already_processed(self, client: AsyncClient):
        headers = await open_session(client)
        await accept(client, headers, "good")

        resp = await client.post(
            f"{API}/portal/proposals/{PROPOSAL_ID}/accept",
            json={"selected_tier": "best"},
            headers=headers,
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "ALREADY_PROCESSED"

    async def test_unknown_tier_is_validation_error(self, client: AsyncClient):
        headers = await open_session(client)
        resp = await client.post(
            f"{API}/portal/proposals/{PROPOSAL_ID}/accept",
            json={"selected_tier": "platinum"},
            headers=headers,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_expired_proposal_cannot_be_accepted(self, client: AsyncClient, seeded_db):
        await set_fields(
            seeded_db,
            Proposal,
            PROPOSAL_ID,
            valid_until=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        headers = await open_session(client)

        resp = await client.post(
            f"{API}/portal/proposals/{PROPOSAL_ID}/accept",
            json={"selected_tier": "better"},
            headers=headers,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "PROPOSAL_EXPIRED"

        proposal = await fetch(seeded_db, Proposal, PROPOSAL_ID)
        assert proposal.status == ProposalStatus.SENT
        assert proposal.deposit_amount is None

    async def test_accept_refreshes_cached_listing(self, client: AsyncClient):
        headers = await open_session(client)
        before = await client.get(f"{API}/portal/proposals", headers=headers)
        assert before.json()["data"]["proposals"][0]["status"] == "sent"

        await accept(client, headers, "best")

        after = await client.get(f"{API}/portal/proposals", headers=headers)
        row = after.json()["data"]["proposals"][0]
        assert row["status"] == "accepted"
        assert row["selected_tier"] == "best"


class TestDecline:

    async def test_decline_with_reason(self, client: AsyncClient, seeded_db):
        headers = await open_session(client)
        resp = await client.post(
            f"{API}/portal/proposals/{PROPOSAL_ID}/decline",
            json={"reason": "Went with another painter"},
            headers=headers,
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "declined"
        proposal = await fetch(seeded_db, Proposal, PROPOSAL_ID)
        assert proposal.decline_reason == "Went with another painter"

    async def test_declined_proposal_cannot_be_accepted(self, client: AsyncClient):
        headers = await open_session(client)
        await client.post(f"{API}/portal/proposals/{PROPOSAL_ID}/decline", json={}, headers=headers)

        resp = await client.post(
            f"{API}/portal/proposals/{PROPOSAL_ID}/accept",
            json={"selected_tier": "good"},
            headers=headers,
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "ALREADY_PROCESSED"


class TestCreatePaymentIntent:

    async def test_requires_acceptance(self, client: AsyncClient, fake_stripe):
        headers = await open_session(client)
        resp = await client.post(
            f"{API}/portal/proposals/{PROPOSAL_ID}/create-payment-intent", headers=headers
        )

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "WRONG_STATE"
        assert fake_stripe.created == []

    async def test_intent_uses_persisted_deposit(self, client: AsyncClient, fake_stripe, seeded_db):
        headers = await open_session(client)
        await accept(client, headers, "best")

        resp = await client.post(
            f"{API}/portal/proposals/{PROPOSAL_ID}/create-payment-intent", headers=headers
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["amount_cents"] == 57500
        assert data["payment_intent_id"] == "pi_test_1"
        assert data["client_secret"] == "pi_test_1_secret"

        created = fake_stripe.created[0]
        assert created["metadata"]["proposalId"] == str(PROPOSAL_ID)
        assert created["metadata"]["tenantId"] == str(TENANT_ID)
        assert created["metadata"]["selectedTier"] == "best"

        proposal = await fetch(seeded_db, Proposal, PROPOSAL_ID)
        assert proposal.payment_intent_id == "pi_test_1"
