"""
E2E: Deposit verification and the selection portal opening.

Stripe is replaced by the ``fake_stripe`` PaymentIntent store.  The proposal
is accepted at the 'better' tier, so the expected deposit is $500.00 or
50000 cents.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import SQLAlchemyError

from quoteflow.core.clock import as_utc
from quoteflow.models import Job, JobStatus, Proposal, ProposalStatus
from quoteflow.services import depositPaymentCoordinator
from tests.e2e.conftest import (
    API,
    CLIENT_ID,
    PROPOSAL_ID,
    SECOND_PROPOSAL_ID,
    TENANT_ID,
    accept,
    fetch,
    job_count,
    open_session,
    pay_deposit,
)


pytestmark = pytest.mark.asyncio


async def _verify(client: AsyncClient, headers, intent_id: str):
    return await client.post(
        f"{API}/portal/proposals/{PROPOSAL_ID}/verify-deposit",
        json={"payment_intent_id": intent_id},
        headers=headers,
    )


class TestHappyPath:

    async def test_verified_deposit_opens_portal_and_creates_job(
        self, client: AsyncClient, fake_stripe, seeded_db
    ):
        headers = await open_session(client)
        data = await pay_deposit(client, headers, fake_stripe, "pi_deposit")

        assert data["already_processed"] is False
        assert data["proposal"]["status"] == "deposit_paid"
        assert data["proposal"]["deposit_verified"] is True
        assert data["proposal"]["portal_open"] is True

        job = data["job"]
        assert job["job_number"] == f"JOB-{datetime.now(timezone.utc).year}-0001"
        assert job["status"] == "deposit_paid"
        assert job["deposit_paid"] is True
        assert job["job_name"] == "Jane Doe - Interior Project"

        proposal = await fetch(seeded_db, Proposal, PROPOSAL_ID)
        assert proposal.deposit_transaction_id == "pi_deposit"
        assert proposal.deposit_payment_method == "stripe"
        closes_in = as_utc(proposal.portal_closed_at) - as_utc(proposal.portal_opened_at)
        assert closes_in == timedelta(days=14)

        assert await job_count(seeded_db) == 1
        async with seeded_db() as db:
            stored = await db.get(Job, uuid.UUID(job["id"]))
        assert stored.quote_id == PROPOSAL_ID
        assert stored.balance_remaining == stored.total_amount - stored.deposit_amount

    async def test_replay_returns_recorded_result(self, client: AsyncClient, fake_stripe, seeded_db):
        headers = await open_session(client)
        first = await pay_deposit(client, headers, fake_stripe, "pi_deposit")

        resp = await _verify(client, headers, "pi_deposit")

        assert resp.status_code == 200
        assert resp.json()["message"] == "Deposit already verified"
        data = resp.json()["data"]
        assert data["already_processed"] is True
        assert data["job"]["id"] == first["job"]["id"]
        assert await job_count(seeded_db) == 1

    async def test_many_replays_create_one_job(self, client: AsyncClient, fake_stripe, seeded_db):
        headers = await open_session(client)
        await pay_deposit(client, headers, fake_stripe, "pi_deposit")

        for _ in range(5):
            resp = await _verify(client, headers, "pi_deposit")
            assert resp.status_code == 200

        assert await job_count(seeded_db) == 1


class TestRejections:

    async def test_second_payment_conflicts(self, client: AsyncClient, fake_stripe, seeded_db):
        headers = await open_session(client)
        await pay_deposit(client, headers, fake_stripe, "pi_deposit")
        fake_stripe.add_intent("pi_other")

        resp = await _verify(client, headers, "pi_other")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "PAYMENT_CONFLICT"
        assert resp.json()["error"]["payment_intent_id"] == "pi_other"
        proposal = await fetch(seeded_db, Proposal, PROPOSAL_ID)
        assert proposal.deposit_transaction_id == "pi_deposit"
        assert proposal.status == ProposalStatus.DEPOSIT_PAID
        assert proposal.deposit_amount == Decimal("500.00")
        assert await job_count(seeded_db) == 1

    async def test_amount_mismatch(self, client: AsyncClient, fake_stripe, seeded_db):
        headers = await open_session(client)
        await accept(client, headers, "better")
        fake_stripe.add_intent("pi_short", amount_cents=49999)

        resp = await _verify(client, headers, "pi_short")

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "AMOUNT_MISMATCH"
        assert error["expected_cents"] == 50000
        assert error["received_cents"] == 49999
        proposal = await fetch(seeded_db, Proposal, PROPOSAL_ID)
        assert proposal.status == ProposalStatus.ACCEPTED
        assert proposal.portal_open is False
        assert await job_count(seeded_db) == 0

    @pytest.mark.parametrize(
        "status,http,code",
        [
            ("processing", 202, "PAYMENT_PROCESSING"),
            ("requires_payment_method", 400, "PAYMENT_FAILED"),
            ("canceled", 400, "PAYMENT_CANCELED"),
            ("requires_action", 400, "PAYMENT_UNEXPECTED_STATUS"),
        ],
    )
    async def test_unsuccessful_intent(self, client: AsyncClient, fake_stripe, seeded_db, status, http, code):
        headers = await open_session(client)
        await accept(client, headers, "better")
        fake_stripe.add_intent("pi_pending", status=status)

        resp = await _verify(client, headers, "pi_pending")

        assert resp.status_code == http
        assert resp.json()["error"]["code"] == code
        assert resp.json()["error"]["stripe_status"] == status
        assert await job_count(seeded_db) == 0

    async def test_intent_for_another_proposal(self, client: AsyncClient, fake_stripe):
        headers = await open_session(client)
        await accept(client, headers, "better")
        fake_stripe.add_intent("pi_elsewhere", proposal_id=SECOND_PROPOSAL_ID)

        resp = await _verify(client, headers, "pi_elsewhere")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "PROPOSAL_MISMATCH"

    async def test_unknown_intent(self, client: AsyncClient, fake_stripe):
        headers = await open_session(client)
        await accept(client, headers, "better")

        resp = await _verify(client, headers, "pi_does_not_exist")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_PAYMENT_INTENT"

    async def test_requires_accepted_proposal(self, client: AsyncClient, fake_stripe):
        headers = await open_session(client)
        fake_stripe.add_intent("pi_early")

        resp = await _verify(client, headers, "pi_early")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "WRONG_STATE"


class TestDatabaseFailure:

    async def test_failure_after_capture_reports_reference(
        self, client: AsyncClient, fake_stripe, seeded_db
    ):
        headers = await open_session(client)
        await accept(client, headers, "better")
        fake_stripe.add_intent("pi_captured")

        with patch.object(
            depositPaymentCoordinator,
            "_next_job_number",
            AsyncMock(side_effect=SQLAlchemyError("disk I/O error")),
        ):
            resp = await _verify(client, headers, "pi_captured")

        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["code"] == "DATABASE_UPDATE_FAILED"
        assert error["payment_intent_id"] == "pi_captured"

        proposal = await fetch(seeded_db, Proposal, PROPOSAL_ID)
        assert proposal.status == ProposalStatus.ACCEPTED
        assert proposal.deposit_transaction_id is None
        assert proposal.portal_open is False
        assert await job_count(seeded_db) == 0

        # Retrying with the same reference once the database recovers succeeds
        resp = await _verify(client, headers, "pi_captured")
        assert resp.status_code == 200
        assert resp.json()["data"]["already_processed"] is False
        assert await job_count(seeded_db) == 1


class TestConcurrentVerification:

    async def test_loser_of_a_race_sees_a_replay(self, client: AsyncClient, fake_stripe, seeded_db):
        headers = await open_session(client)
        await accept(client, headers, "better")
        fake_stripe.add_intent("pi_race")

        real_apply = depositPaymentCoordinator._apply_deposit
        raced = False

        async def apply_after_competitor(db, **kwargs):
            nonlocal raced
            if not raced:
                raced = True
                async with seeded_db() as other:
                    await depositPaymentCoordinator.verify_deposit_and_open_portal(
                        other,
                        proposal_id=PROPOSAL_ID,
                        tenant_id=TENANT_ID,
                        client_id=CLIENT_ID,
                        payment_intent_id="pi_race",
                    )
            return await real_apply(db, **kwargs)

        with patch.object(depositPaymentCoordinator, "_apply_deposit", apply_after_competitor):
            resp = await _verify(client, headers, "pi_race")

        assert resp.status_code == 200
        assert resp.json()["data"]["already_processed"] is True
        assert resp.json()["data"]["job"]["status"] == JobStatus.DEPOSIT_PAID.value
        assert await job_count(seeded_db) == 1


class TestPaymentStatus:

    async def test_status_with_processor_view(self, client: AsyncClient, fake_stripe):
        headers = await open_session(client)
        await pay_deposit(client, headers, fake_stripe, "pi_deposit")

        resp = await client.get(
            f"{API}/portal/proposals/{PROPOSAL_ID}/payment-status",
            params={"payment_intent_id": "pi_deposit"},
            headers=headers,
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["proposal_status"] == "deposit_paid"
        assert data["deposit_verified"] is True
        assert data["stripe_status"] == "succeeded"
        assert data["stripe_amount_cents"] == 50000
        assert data["transaction_matches"] is True
