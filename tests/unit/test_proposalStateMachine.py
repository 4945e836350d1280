"""
Unit tests for the Proposal State Machine.

Tests the transition table, the deposit transition capability selection,
and the accept / decline / view guards against a mocked session.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from quoteflow.core.errors import (
    AlreadyProcessed,
    InvalidPricingInput,
    ProposalExpired,
    WrongState,
)
from quoteflow.models.proposal import PricingTier, ProposalStatus
from quoteflow.services import proposalStateMachine
from quoteflow.services.proposalStateMachine import (
    DirectDepositTransition,
    StatusFlowDepositTransition,
    VALID_TRANSITIONS,
    apply_transition,
    get_valid_transitions,
    select_deposit_transition,
    validate_transition,
)
from tests.factories import build_proposal, scalar_result


pytestmark = pytest.mark.asyncio


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


class TestTransitions:

    @pytest.mark.parametrize(
        "current,target",
        [
            (ProposalStatus.DRAFT, ProposalStatus.SENT),
            (ProposalStatus.SENT, ProposalStatus.VIEWED),
            (ProposalStatus.SENT, ProposalStatus.DECLINED),
            (ProposalStatus.VIEWED, ProposalStatus.VIEWED),
            (ProposalStatus.VIEWED, ProposalStatus.ACCEPTED),
            (ProposalStatus.ACCEPTED, ProposalStatus.DEPOSIT_PAID),
            (ProposalStatus.ACCEPTED, ProposalStatus.DECLINED),
            (ProposalStatus.DEPOSIT_PAID, ProposalStatus.SELECTIONS_COMPLETE),
        ],
    )
    async def test_allowed(self, current, target):
        assert validate_transition(current, target).allowed is True

    @pytest.mark.parametrize(
        "current,target",
        [
            (ProposalStatus.DRAFT, ProposalStatus.ACCEPTED),
            (ProposalStatus.SENT, ProposalStatus.ACCEPTED),
            (ProposalStatus.SENT, ProposalStatus.DEPOSIT_PAID),
            (ProposalStatus.VIEWED, ProposalStatus.DEPOSIT_PAID),
            (ProposalStatus.DEPOSIT_PAID, ProposalStatus.DECLINED),
            (ProposalStatus.DECLINED, ProposalStatus.ACCEPTED),
        ],
    )
    async def test_rejected(self, current, target):
        result = validate_transition(current, target)
        assert result.allowed is False
        assert current.value in result.reason

    async def test_terminal_states_have_no_exits(self):
        assert VALID_TRANSITIONS[ProposalStatus.DECLINED] == set()
        assert VALID_TRANSITIONS[ProposalStatus.SELECTIONS_COMPLETE] == set()
        assert get_valid_transitions(ProposalStatus.DECLINED) == []

    async def test_apply_transition_raises_wrong_state(self):
        proposal = build_proposal(status=ProposalStatus.SENT)
        with pytest.raises(WrongState):
            apply_transition(proposal, ProposalStatus.DEPOSIT_PAID)
        assert proposal.status == ProposalStatus.SENT


# ---------------------------------------------------------------------------
# Deposit transition capability
# ---------------------------------------------------------------------------


class TestDepositTransition:

    async def test_status_flow_for_accepted_proposal(self):
        proposal = build_proposal(status=ProposalStatus.ACCEPTED)
        assert isinstance(select_deposit_transition(proposal), StatusFlowDepositTransition)

    async def test_direct_when_flow_disabled(self):
        proposal = build_proposal(status=ProposalStatus.ACCEPTED)
        with patch.object(proposalStateMachine.settings, "status_flow_enabled", False):
            assert isinstance(select_deposit_transition(proposal), DirectDepositTransition)

    async def test_direct_when_flow_cannot_apply(self):
        proposal = build_proposal(status=ProposalStatus.VIEWED)
        assert isinstance(select_deposit_transition(proposal), DirectDepositTransition)

    async def test_both_capabilities_stamp_the_deposit(self):
        now = datetime.now(timezone.utc)
        for capability in (StatusFlowDepositTransition(), DirectDepositTransition()):
            proposal = build_proposal(status=ProposalStatus.ACCEPTED)
            capability.apply(proposal, payment_reference="pi_123", now=now)
            assert proposal.status == ProposalStatus.DEPOSIT_PAID
            assert proposal.deposit_transaction_id == "pi_123"
            assert proposal.deposit_payment_method == "stripe"
            assert proposal.deposit_verified_at == now
            assert proposal.deposit_verified is True

    @pytest.mark.parametrize(
        "status,allowed",
        [
            (ProposalStatus.ACCEPTED, True),
            (ProposalStatus.SENT, False),
            (ProposalStatus.VIEWED, False),
        ],
    )
    async def test_status_flow_check(self, status, allowed):
        result = StatusFlowDepositTransition().check(build_proposal(status=status))
        assert result.allowed is allowed
        assert DirectDepositTransition().check(build_proposal(status=status)).allowed

    async def test_manual_method_is_stamped(self):
        now = datetime.now(timezone.utc)
        proposal = build_proposal(status=ProposalStatus.SENT)
        DirectDepositTransition().apply(
            proposal, payment_reference=None, now=now, payment_method="wire_transfer"
        )
        assert proposal.deposit_payment_method == "wire_transfer"
        assert proposal.deposit_transaction_id is None
        assert proposal.status == ProposalStatus.DEPOSIT_PAID


# ---------------------------------------------------------------------------
# Accept
# ---------------------------------------------------------------------------


class TestAccept:

    async def test_accept_from_sent_passes_through_viewed(self, mock_db, sent_proposal):
        mock_db.execute.return_value = scalar_result(None)

        result = await proposalStateMachine.accept(mock_db, sent_proposal, PricingTier.BEST)

        assert sent_proposal.status == ProposalStatus.ACCEPTED
        assert sent_proposal.viewed_at is not None
        assert sent_proposal.selected_tier == PricingTier.BEST
        assert sent_proposal.total == Decimal("1150.00")
        assert sent_proposal.deposit_amount == Decimal("575.00")
        assert sent_proposal.tier_pricing["best"]["deposit"] == "575.00"
        assert result.tier_pricing.good.total == Decimal("850.00")
        mock_db.commit.assert_awaited()

    async def test_accept_uses_contractor_deposit_percent(self, mock_db, sent_proposal):
        from quoteflow.models.tenant import ContractorSettings

        mock_db.execute.return_value = scalar_result(
            ContractorSettings(tenant_id=sent_proposal.tenant_id, deposit_percent=25)
        )
        await proposalStateMachine.accept(mock_db, sent_proposal, "better")
        assert sent_proposal.deposit_amount == Decimal("250.00")

    async def test_accept_twice_is_already_processed(self, mock_db, accepted_proposal):
        with pytest.raises(AlreadyProcessed):
            await proposalStateMachine.accept(mock_db, accepted_proposal, PricingTier.GOOD)
        mock_db.commit.assert_not_awaited()

    async def test_accept_after_deposit_is_already_processed(self, mock_db, paid_proposal):
        with pytest.raises(AlreadyProcessed):
            await proposalStateMachine.accept(mock_db, paid_proposal, PricingTier.GOOD)

    async def test_accept_declined_is_already_processed(self, mock_db):
        proposal = build_proposal(status=ProposalStatus.DECLINED)
        with pytest.raises(AlreadyProcessed):
            await proposalStateMachine.accept(mock_db, proposal, PricingTier.GOOD)

    async def test_accept_draft_is_wrong_state(self, mock_db):
        proposal = build_proposal(status=ProposalStatus.DRAFT)
        with pytest.raises(WrongState):
            await proposalStateMachine.accept(mock_db, proposal, PricingTier.GOOD)

    async def test_accept_expired_proposal(self, mock_db):
        proposal = build_proposal(
            status=ProposalStatus.VIEWED,
            valid_until=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        with pytest.raises(ProposalExpired):
            await proposalStateMachine.accept(mock_db, proposal, PricingTier.BETTER)
        assert proposal.status == ProposalStatus.VIEWED
        assert proposal.deposit_amount is None

    async def test_accept_unknown_tier(self, mock_db, sent_proposal):
        with pytest.raises(InvalidPricingInput) as exc_info:
            await proposalStateMachine.accept(mock_db, sent_proposal, "platinum")
        assert exc_info.value.details["valid_tiers"] == ["good", "better", "best"]
        assert sent_proposal.status == ProposalStatus.SENT

    async def test_accept_naive_valid_until_is_treated_as_utc(self, mock_db):
        proposal = build_proposal(
            status=ProposalStatus.VIEWED,
            valid_until=datetime.utcnow() - timedelta(minutes=1),
        )
        with pytest.raises(ProposalExpired):
            await proposalStateMachine.accept(mock_db, proposal, PricingTier.BETTER)


# ---------------------------------------------------------------------------
# Decline and view
# ---------------------------------------------------------------------------


class TestDeclineAndView:

    async def test_decline_records_reason(self, mock_db, sent_proposal):
        mock_db.execute.return_value = scalar_result(None)
        await proposalStateMachine.decline(mock_db, sent_proposal, "Too expensive")
        assert sent_proposal.status == ProposalStatus.DECLINED
        assert sent_proposal.decline_reason == "Too expensive"
        assert sent_proposal.declined_at is not None

    async def test_decline_after_deposit_is_rejected(self, mock_db, paid_proposal):
        with pytest.raises(AlreadyProcessed):
            await proposalStateMachine.decline(mock_db, paid_proposal)

    async def test_decline_accepted_proposal_is_allowed(self, mock_db, accepted_proposal):
        mock_db.execute.return_value = scalar_result(None)
        await proposalStateMachine.decline(mock_db, accepted_proposal)
        assert accepted_proposal.status == ProposalStatus.DECLINED

    async def test_first_view_transitions(self, mock_db, sent_proposal):
        mock_db.execute.return_value = scalar_result(None)
        assert await proposalStateMachine.mark_viewed(mock_db, sent_proposal) is True
        assert sent_proposal.status == ProposalStatus.VIEWED

    async def test_repeat_view_keeps_status(self, mock_db, accepted_proposal):
        assert await proposalStateMachine.mark_viewed(mock_db, accepted_proposal) is False
        assert accepted_proposal.status == ProposalStatus.ACCEPTED

    async def test_view_draft_is_wrong_state(self, mock_db):
        with pytest.raises(WrongState):
            await proposalStateMachine.mark_viewed(mock_db, build_proposal(status=ProposalStatus.DRAFT))
