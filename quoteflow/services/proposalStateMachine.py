"""
Proposal State Machine
======================

Finite state machine governing customer-facing proposal transitions.  Every
status change goes through ``validate_transition`` before being persisted.

State machine overview::

    draft --> sent --> viewed --> accepted --> deposit_paid --> selections_complete
                |         |           |
                +---------+-----------+--> declined

``viewed`` may be re-entered: marking an already-viewed proposal as viewed
is an audit-only no-op.  ``deposit_verified`` and ``selections_complete`` on
the model are views of the status, not separate flags.

Customer actions (view, accept, decline) commit their own transaction and
then drain an ``EffectOutbox`` of audit records, contractor notifications
and cache invalidation; a failing effect never undoes the transition.

The deposit transition itself is owned by ``depositPaymentCoordinator``; it
reaches this module through the ``DepositTransition`` capability so that a
status flow that cannot apply degrades to a direct field update instead of
aborting a payment that has already been captured.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quoteflow.core.cache import CachePort, client_tag, proposal_tag
from quoteflow.core.clock import as_utc, utcnow
from quoteflow.core.config import settings
from quoteflow.core.errors import (
    AlreadyProcessed,
    InvalidPricingInput,
    NotFound,
    ProposalExpired,
    ValidationFailed,
    WrongState,
)
from quoteflow.models.proposal import PricingTier, Proposal, ProposalStatus
from quoteflow.services import auditService, notificationService
from quoteflow.services.accessTokenService import create_magic_link
from quoteflow.services.contractorSettingsService import get_contractor_settings
from quoteflow.services.effects import EffectOutbox
from quoteflow.services.tierPricingEngine import TierPricing, compute_tiers

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transition guard result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition validation attempt."""
    allowed: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Transition definitions
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[ProposalStatus, set[ProposalStatus]] = {
    ProposalStatus.DRAFT: {ProposalStatus.SENT},
    ProposalStatus.SENT: {
        ProposalStatus.VIEWED,
        ProposalStatus.DECLINED,
    },
    ProposalStatus.VIEWED: {
        ProposalStatus.VIEWED,  # idempotent re-view
        ProposalStatus.ACCEPTED,
        ProposalStatus.DECLINED,
    },
    ProposalStatus.ACCEPTED: {
        ProposalStatus.DEPOSIT_PAID,
        ProposalStatus.DECLINED,
    },
    ProposalStatus.DEPOSIT_PAID: {ProposalStatus.SELECTIONS_COMPLETE},
    ProposalStatus.SELECTIONS_COMPLETE: set(),
    ProposalStatus.DECLINED: set(),
}


def validate_transition(current: ProposalStatus, target: ProposalStatus) -> TransitionResult:
    """Check whether ``current -> target`` is a legal edge."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target in allowed:
        return TransitionResult(allowed=True)
    return TransitionResult(
        allowed=False,
        reason=(
            f"Cannot transition proposal from '{current.value}' to '{target.value}'. "
            f"Valid targets: {', '.join(sorted(s.value for s in allowed)) or 'none'}."
        ),
    )


def get_valid_transitions(current: ProposalStatus) -> list[ProposalStatus]:
    return sorted(VALID_TRANSITIONS.get(current, set()), key=lambda s: s.value)


def apply_transition(proposal: Proposal, target: ProposalStatus) -> None:
    """Validate and set ``proposal.status``; raise ``WrongState`` if illegal."""
    check = validate_transition(proposal.status, target)
    if not check.allowed:
        raise WrongState(check.reason or "Invalid proposal transition")
    logger.info(
        "Proposal %s: %s -> %s",
        proposal.id,
        proposal.status.value,
        target.value,
    )
    proposal.status = target


# ---------------------------------------------------------------------------
# Deposit transition capability
# ---------------------------------------------------------------------------

class DepositTransition(Protocol):
    name: str

    def check(self, proposal: Proposal) -> TransitionResult: ...

    def apply(
        self,
        proposal: Proposal,
        *,
        payment_reference: Optional[str],
        now: datetime,
        payment_method: str = "stripe",
    ) -> None: ...


class StatusFlowDepositTransition:
    """Move the proposal to ``deposit_paid`` through the transition table."""

    name = "status_flow"

    def check(self, proposal: Proposal) -> TransitionResult:
        return validate_transition(proposal.status, ProposalStatus.DEPOSIT_PAID)

    def apply(
        self,
        proposal: Proposal,
        *,
        payment_reference: Optional[str],
        now: datetime,
        payment_method: str = "stripe",
    ) -> None:
        apply_transition(proposal, ProposalStatus.DEPOSIT_PAID)
        _stamp_deposit(proposal, payment_reference, payment_method, now)


class DirectDepositTransition:
    """Write the ``deposit_paid`` state directly, without the table check."""

    name = "direct"

    def check(self, proposal: Proposal) -> TransitionResult:
        return TransitionResult(allowed=True)

    def apply(
        self,
        proposal: Proposal,
        *,
        payment_reference: Optional[str],
        now: datetime,
        payment_method: str = "stripe",
    ) -> None:
        logger.info(
            "Proposal %s: %s -> deposit_paid (direct)",
            proposal.id,
            proposal.status.value,
        )
        proposal.status = ProposalStatus.DEPOSIT_PAID
        _stamp_deposit(proposal, payment_reference, payment_method, now)


def _stamp_deposit(
    proposal: Proposal,
    payment_reference: Optional[str],
    payment_method: str,
    now: datetime,
) -> None:
    proposal.deposit_transaction_id = payment_reference
    proposal.deposit_payment_method = payment_method
    proposal.deposit_verified_at = now


def select_deposit_transition(proposal: Proposal) -> DepositTransition:
    """Pick the capability used to record a verified deposit.

    The status flow is asked first; when it reports that it cannot apply to
    this proposal, or when ``status_flow_enabled`` is off, the direct update
    is used.  A Stripe deposit always reaches this point from ``accepted``;
    a deposit the contractor records by hand may arrive from ``sent`` or
    ``viewed``, which the table does not connect to ``deposit_paid``.
    """
    if not settings.status_flow_enabled:
        return DirectDepositTransition()
    flow = StatusFlowDepositTransition()
    check = flow.check(proposal)
    if not check.allowed:
        logger.warning(
            "Status flow cannot record deposit for proposal %s (%s); using direct update",
            proposal.id,
            check.reason,
        )
        return DirectDepositTransition()
    return flow


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

async def load_proposal(
    db: AsyncSession,
    proposal_id: uuid.UUID,
    *,
    tenant_id: uuid.UUID,
    client_id: Optional[uuid.UUID] = None,
    for_update: bool = False,
) -> Proposal:
    """Load a proposal scoped to its tenant (and client, for customers).

    Raises:
        NotFound: No such proposal within the scope.
    """
    stmt = select(Proposal).where(
        Proposal.id == proposal_id,
        Proposal.tenant_id == tenant_id,
    )
    if client_id is not None:
        stmt = stmt.where(Proposal.client_id == client_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)

    result = await db.execute(stmt)
    proposal = result.scalar_one_or_none()
    if proposal is None:
        raise NotFound("Proposal not found")
    return proposal


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------

def _queue_effects(
    outbox: EffectOutbox,
    db: AsyncSession,
    proposal: Proposal,
    action: str,
    *,
    details: dict | None = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    notify: str | None = None,
    notify_detail: str = "",
    cache: CachePort | None = None,
) -> None:
    outbox.add(
        f"audit:{action}",
        auditService.deferred(
            db,
            tenant_id=proposal.tenant_id,
            client_id=proposal.client_id,
            action=action,
            entity_type="Quote",
            entity_id=proposal.id,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
        ),
    )
    if notify:
        outbox.add(
            f"email:contractor_{notify}",
            lambda: notificationService.notify_contractor(db, proposal, notify, notify_detail),
        )
    if cache is not None:
        outbox.add(
            "cache:invalidate",
            lambda: cache.invalidate_by_tags(
                [client_tag(proposal.tenant_id, proposal.client_id), proposal_tag(proposal.id)]
            ),
        )


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def send_proposal(
    db: AsyncSession,
    proposal: Proposal,
    *,
    cache: CachePort | None = None,
) -> Proposal:
    """Contractor sends a draft proposal: ``draft -> sent``.

    Issues (or reuses) a magic link for the client and emails it.
    """
    apply_transition(proposal, ProposalStatus.SENT)
    now = utcnow()
    proposal.sent_at = now
    if proposal.valid_until is None:
        proposal.valid_until = now + timedelta(days=settings.proposal_validity_days)

    contractor = await get_contractor_settings(db, proposal.tenant_id)
    link = await create_magic_link(
        db,
        tenant_id=proposal.tenant_id,
        client_id=proposal.client_id,
        quote_id=proposal.id,
        expiry_days=contractor.magic_link_expiry_days,
    )

    outbox = EffectOutbox()
    _queue_effects(outbox, db, proposal, "quote_sent", details={"magic_link_id": str(link.id)}, cache=cache)
    token = link.token
    outbox.add("email:proposal_link", lambda: notificationService.send_proposal_link(proposal, token))

    await db.commit()
    await outbox.run()
    return proposal


async def mark_viewed(
    db: AsyncSession,
    proposal: Proposal,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    cache: CachePort | None = None,
) -> bool:
    """Record that the customer opened the proposal.

    Returns True on the first view.  Later calls, or calls on proposals that
    are already further along, only write an audit record.
    """
    outbox = EffectOutbox()
    if proposal.status == ProposalStatus.DRAFT:
        raise WrongState("Proposal has not been sent yet")

    first_view = proposal.status == ProposalStatus.SENT
    if first_view:
        apply_transition(proposal, ProposalStatus.VIEWED)
        proposal.viewed_at = utcnow()
        _queue_effects(
            outbox, db, proposal, "quote_viewed",
            ip_address=ip_address, user_agent=user_agent, notify="viewed", cache=cache,
        )
    else:
        _queue_effects(
            outbox, db, proposal, "quote_viewed_again",
            details={"status": proposal.status.value},
            ip_address=ip_address, user_agent=user_agent,
        )

    await db.commit()
    await outbox.run()
    return first_view


@dataclass(frozen=True)
class AcceptResult:
    proposal: Proposal
    tier_pricing: TierPricing


async def accept(
    db: AsyncSession,
    proposal: Proposal,
    tier: PricingTier | str,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    cache: CachePort | None = None,
) -> AcceptResult:
    """Customer accepts the proposal at a pricing tier.

    Tier amounts are computed once here and persisted; every later reader
    (payment intent, verification, job, portal) uses the stored
    ``deposit_amount`` and ``total``.

    Raises:
        AlreadyProcessed: Already accepted, declined or paid.
        ProposalExpired: ``valid_until`` has passed.
        WrongState: The proposal was never sent.
    """
    try:
        selected = PricingTier(tier)
    except ValueError:
        raise InvalidPricingInput(
            f"Unknown pricing tier '{tier}'",
            details={"valid_tiers": [t.value for t in PricingTier]},
        )

    already_done = proposal.status in (ProposalStatus.ACCEPTED, ProposalStatus.DECLINED)
    if already_done or proposal.deposit_verified or proposal.portal_open:
        raise AlreadyProcessed(
            f"Proposal has already been {proposal.status.value.replace('_', ' ')}",
            details={"status": proposal.status.value},
        )
    if proposal.status == ProposalStatus.DRAFT:
        raise WrongState("Proposal has not been sent yet")

    now = utcnow()
    valid_until = as_utc(proposal.valid_until)
    if valid_until is not None and now > valid_until:
        raise ProposalExpired(
            "This proposal has expired. Please contact your contractor for an updated quote.",
            details={"valid_until": valid_until.isoformat()},
        )

    contractor = await get_contractor_settings(db, proposal.tenant_id)
    pricing = compute_tiers(proposal.base_total, contractor.deposit_percent)
    chosen = pricing.for_tier(selected)

    if proposal.status == ProposalStatus.SENT:
        apply_transition(proposal, ProposalStatus.VIEWED)
        proposal.viewed_at = now
    apply_transition(proposal, ProposalStatus.ACCEPTED)

    proposal.selected_tier = selected
    proposal.tier_pricing = pricing.to_dict()
    proposal.total = chosen.total
    proposal.deposit_amount = chosen.deposit
    proposal.accepted_at = now

    outbox = EffectOutbox()
    _queue_effects(
        outbox, db, proposal, "quote_accepted",
        details={
            "selected_tier": selected.value,
            "total": str(chosen.total),
            "deposit_amount": str(chosen.deposit),
        },
        ip_address=ip_address,
        user_agent=user_agent,
        notify="accepted",
        notify_detail=f"Tier: {selected.value}. Deposit due: ${chosen.deposit:,.2f}",
        cache=cache,
    )
    await db.commit()
    await outbox.run()

    logger.info(
        "Proposal %s accepted: tier=%s total=%s deposit=%s",
        proposal.id,
        selected.value,
        chosen.total,
        chosen.deposit,
    )
    return AcceptResult(proposal=proposal, tier_pricing=pricing)


async def decline(
    db: AsyncSession,
    proposal: Proposal,
    reason: Optional[str] = None,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    cache: CachePort | None = None,
) -> Proposal:
    """Customer declines the proposal.

    Raises:
        AlreadyProcessed: Already declined, or the deposit has been paid.
        WrongState: The proposal was never sent.
    """
    if proposal.status == ProposalStatus.DECLINED:
        raise AlreadyProcessed("Proposal has already been declined")
    if proposal.deposit_verified:
        raise AlreadyProcessed("Proposal cannot be declined after the deposit has been paid")
    if proposal.status == ProposalStatus.DRAFT:
        raise WrongState("Proposal has not been sent yet")

    apply_transition(proposal, ProposalStatus.DECLINED)
    proposal.declined_at = utcnow()
    proposal.decline_reason = reason

    outbox = EffectOutbox()
    _queue_effects(
        outbox, db, proposal, "quote_declined",
        details={"reason": reason},
        ip_address=ip_address,
        user_agent=user_agent,
        notify="declined",
        notify_detail=f"Reason: {reason}" if reason else "",
        cache=cache,
    )
    await db.commit()
    await outbox.run()
    return proposal


async def update_deposit_amount(
    db: AsyncSession,
    proposal: Proposal,
    amount: Decimal,
    *,
    cache: CachePort | None = None,
) -> Proposal:
    """Contractor adjusts the deposit before it is paid.

    Any PaymentIntent created for the old amount is dropped from the
    proposal; verifying it afterwards fails the amount check.

    Raises:
        ValidationFailed: ``amount`` is not positive or exceeds the total.
        WrongState: The deposit is already verified.
    """
    if amount <= 0:
        raise ValidationFailed("Deposit amount must be greater than zero")
    if proposal.total is not None and amount > proposal.total:
        raise ValidationFailed(
            "Deposit amount cannot exceed the proposal total",
            details={"total": str(proposal.total)},
        )
    if proposal.deposit_verified:
        raise WrongState(
            "Cannot change the deposit amount after it has been paid",
            details={"status": proposal.status.value},
        )

    previous = proposal.deposit_amount
    proposal.deposit_amount = amount
    proposal.payment_intent_id = None

    outbox = EffectOutbox()
    _queue_effects(
        outbox, db, proposal, "deposit_amount_updated",
        details={
            "old_amount": str(previous) if previous is not None else None,
            "new_amount": str(amount),
        },
        cache=cache,
    )
    await db.commit()
    await outbox.run()

    logger.info("Proposal %s deposit changed %s -> %s", proposal.id, previous, amount)
    return proposal
