"""
Customer Portal API Routes
==========================

Endpoints the customer-facing portal calls, from opening a magic link to
submitting final selections.  Every endpoint except ``/access/{token}``
authenticates with ``Authorization: Bearer <session token>``.

Access:
  GET  /portal/access/{token}                          -- Open a magic link
  POST /portal/validate-session                        -- Check a session token
  POST /portal/logout                                  -- Revoke the session
  POST /portal/request-otp                             -- Send a verification code
  POST /portal/verify-otp                              -- Verify and widen scope

Proposals:
  GET  /portal/proposals                               -- Proposals in scope
  GET  /portal/proposals/{id}                          -- Proposal detail
  POST /portal/proposals/{id}/view                     -- Record a view
  POST /portal/proposals/{id}/accept                   -- Accept at a tier
  POST /portal/proposals/{id}/decline                  -- Decline

Deposit:
  POST /portal/proposals/{id}/create-payment-intent    -- Start deposit payment
  POST /portal/proposals/{id}/verify-deposit           -- Verify and open portal
  GET  /portal/proposals/{id}/payment-status           -- Deposit state

Selection portal:
  GET  /portal/proposals/{id}/portal-status            -- Open / expired state
  PUT  /portal/proposals/{id}/areas/{area_id}/selections  -- Save one area
  POST /portal/proposals/{id}/submit-selections        -- Finalize selections

Jobs:
  GET  /portal/jobs                                    -- Jobs in scope
  GET  /portal/jobs/{job_id}                           -- Job detail with selections

Errors are raised as ``PortalError`` subclasses and rendered by the
handler in ``quoteflow.main``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Query
from sqlalchemy.ext.asyncio import AsyncSession

from quoteflow.api.deps import ClientIP, CurrentCustomer, DBSession, QueryCache, UserAgent
from quoteflow.api.schemas.portal import (
    AcceptOut,
    AcceptProposalRequest,
    AccessOut,
    ApiResponse,
    AreaSelectionRequest,
    ClientOut,
    DeclineProposalRequest,
    DepositVerificationOut,
    JobOut,
    OTPRequestOut,
    OTPVerifyOut,
    PaymentIntentOut,
    PaymentStatusOut,
    PortalStatusOut,
    ProposalOut,
    RequestOTPRequest,
    SessionOut,
    SubmissionOut,
    SubmitSelectionsRequest,
    TierOptionOut,
    VerifyDepositRequest,
    VerifyOTPRequest,
    ok,
)
from quoteflow.core.errors import MagicLinkInvalid
from quoteflow.integrations.stripe import STRIPE_PUBLISHABLE_KEY
from quoteflow.models.proposal import PricingTier, Proposal
from quoteflow.services import (
    accessTokenService,
    depositPaymentCoordinator,
    jobService,
    otpVerificationService,
    portalService,
    proposalStateMachine,
)
from quoteflow.services.accessTokenService import SessionValidation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/portal", tags=["Customer Portal"])


async def _customer_proposal(
    db: AsyncSession,
    customer: SessionValidation,
    proposal_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Proposal:
    accessTokenService.assert_quote_access(customer.session, proposal_id)
    return await proposalStateMachine.load_proposal(
        db,
        proposal_id,
        tenant_id=customer.session.tenant_id,
        client_id=customer.session.client_id,
        for_update=for_update,
    )


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------

@router.get(
    "/access/{token}",
    response_model=ApiResponse,
    summary="Open a magic link",
    description=(
        "Validates the magic link token and opens (or resumes) a customer "
        "session. The returned session token authenticates every other "
        "portal request."
    ),
)
async def access_magic_link(
    token: str,
    db: DBSession,
    ip_address: ClientIP,
    user_agent: UserAgent,
) -> ApiResponse:
    result = await accessTokenService.validate_magic_link(db, token, ip_address, user_agent)
    if not result.valid:
        raise MagicLinkInvalid(result.message or "This link is invalid.", details={"reason": result.reason})

    return ok(
        "Access granted",
        AccessOut(
            session=SessionOut.model_validate(result.session),
            client=ClientOut.model_validate(result.client),
            quote_id=result.quote.id if result.quote else None,
        ),
    )


@router.post("/validate-session", response_model=ApiResponse, summary="Validate a session token")
async def validate_session(customer: CurrentCustomer) -> ApiResponse:
    return ok(
        "Session is valid",
        {
            "session": SessionOut.model_validate(customer.session).model_dump(mode="json"),
            "client": ClientOut.model_validate(customer.client).model_dump(mode="json"),
        },
    )


@router.post("/logout", response_model=ApiResponse, summary="Revoke the current session")
async def logout(customer: CurrentCustomer, db: DBSession) -> ApiResponse:
    await accessTokenService.revoke_session(db, customer.session)
    return ok("Logged out")


@router.post(
    "/request-otp",
    response_model=ApiResponse,
    summary="Send a verification code",
    description=(
        "Sends a one-time code by email or SMS. Requesting a new code "
        "invalidates earlier ones. Limited per session within a rolling window."
    ),
)
async def request_otp(
    body: RequestOTPRequest,
    customer: CurrentCustomer,
    db: DBSession,
    ip_address: ClientIP,
) -> ApiResponse:
    result = await otpVerificationService.request_otp(db, customer.session, body.method, ip_address)
    return ok(
        f"Verification code sent to {result.masked_target}",
        OTPRequestOut(
            verification_id=result.verification_id,
            method=result.method,
            masked_target=result.masked_target,
            expires_at=result.expires_at,
        ),
    )


@router.post(
    "/verify-otp",
    response_model=ApiResponse,
    summary="Verify a code",
    description="On success the session can open every proposal the client has with the contractor.",
)
async def verify_otp(
    body: VerifyOTPRequest,
    customer: CurrentCustomer,
    db: DBSession,
    ip_address: ClientIP,
    cache: QueryCache,
) -> ApiResponse:
    result = await otpVerificationService.verify_otp(
        db,
        code=body.code,
        session_id=customer.session.id,
        ip_address=ip_address,
        cache=cache,
    )
    return ok(
        "Verification successful",
        OTPVerifyOut(session=SessionOut.model_validate(result.session), quote_ids=result.quote_ids),
    )


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

@router.get("/proposals", response_model=ApiResponse, summary="List proposals in the session's scope")
async def list_proposals(customer: CurrentCustomer, db: DBSession, cache: QueryCache) -> ApiResponse:
    rows = await portalService.list_customer_proposals(
        db,
        tenant_id=customer.session.tenant_id,
        client_id=customer.session.client_id,
        quote_ids=accessTokenService.accessible_quote_ids(customer.session),
        cache=cache,
    )
    return ok("Proposals retrieved", {"proposals": rows, "is_verified": customer.session.is_verified})


@router.get("/proposals/{proposal_id}", response_model=ApiResponse, summary="Get proposal detail")
async def get_proposal(
    proposal_id: uuid.UUID,
    customer: CurrentCustomer,
    db: DBSession,
    cache: QueryCache,
) -> ApiResponse:
    proposal = await _customer_proposal(db, customer, proposal_id)
    await portalService.enforce_expiry(db, proposal, cache=cache)
    return ok("Proposal retrieved", ProposalOut.model_validate(proposal))


@router.post("/proposals/{proposal_id}/view", response_model=ApiResponse, summary="Record a proposal view")
async def view_proposal(
    proposal_id: uuid.UUID,
    customer: CurrentCustomer,
    db: DBSession,
    ip_address: ClientIP,
    user_agent: UserAgent,
    cache: QueryCache,
) -> ApiResponse:
    proposal = await _customer_proposal(db, customer, proposal_id)
    first_view = await proposalStateMachine.mark_viewed(
        db, proposal, ip_address=ip_address, user_agent=user_agent, cache=cache
    )
    return ok(
        "Proposal viewed",
        {"first_view": first_view, "status": proposal.status.value},
    )


@router.post(
    "/proposals/{proposal_id}/accept",
    response_model=ApiResponse,
    summary="Accept a proposal at a pricing tier",
    description=(
        "Locks in the tier total and the deposit due. The persisted amounts "
        "are what the deposit payment is later verified against."
    ),
)
async def accept_proposal(
    proposal_id: uuid.UUID,
    body: AcceptProposalRequest,
    customer: CurrentCustomer,
    db: DBSession,
    ip_address: ClientIP,
    user_agent: UserAgent,
    cache: QueryCache,
) -> ApiResponse:
    proposal = await _customer_proposal(db, customer, proposal_id, for_update=True)
    result = await proposalStateMachine.accept(
        db,
        proposal,
        body.selected_tier,
        ip_address=ip_address,
        user_agent=user_agent,
        cache=cache,
    )
    chosen = result.tier_pricing.for_tier(body.selected_tier)
    return ok(
        "Proposal accepted",
        AcceptOut(
            proposal=ProposalOut.model_validate(result.proposal),
            selected_tier=body.selected_tier,
            total=chosen.total,
            deposit_amount=chosen.deposit,
            tiers=[
                TierOptionOut(
                    tier=tier,
                    total=result.tier_pricing.for_tier(tier).total,
                    deposit=result.tier_pricing.for_tier(tier).deposit,
                    balance=result.tier_pricing.for_tier(tier).balance,
                )
                for tier in PricingTier
            ],
        ),
    )


@router.post("/proposals/{proposal_id}/decline", response_model=ApiResponse, summary="Decline a proposal")
async def decline_proposal(
    proposal_id: uuid.UUID,
    body: DeclineProposalRequest,
    customer: CurrentCustomer,
    db: DBSession,
    ip_address: ClientIP,
    user_agent: UserAgent,
    cache: QueryCache,
) -> ApiResponse:
    proposal = await _customer_proposal(db, customer, proposal_id, for_update=True)
    proposal = await proposalStateMachine.decline(
        db,
        proposal,
        body.reason,
        ip_address=ip_address,
        user_agent=user_agent,
        cache=cache,
    )
    return ok("Proposal declined", ProposalOut.model_validate(proposal))


# ---------------------------------------------------------------------------
# Deposit
# ---------------------------------------------------------------------------

@router.post(
    "/proposals/{proposal_id}/create-payment-intent",
    response_model=ApiResponse,
    summary="Create the deposit payment intent",
)
async def create_payment_intent(
    proposal_id: uuid.UUID,
    customer: CurrentCustomer,
    db: DBSession,
) -> ApiResponse:
    proposal = await _customer_proposal(db, customer, proposal_id)
    intent = await depositPaymentCoordinator.create_deposit_payment_intent(db, proposal)
    return ok(
        "Payment intent created",
        PaymentIntentOut(
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            amount_cents=intent.amount_cents,
            currency=intent.currency,
            publishable_key=STRIPE_PUBLISHABLE_KEY,
        ),
    )


@router.post(
    "/proposals/{proposal_id}/verify-deposit",
    response_model=ApiResponse,
    summary="Verify the deposit and open the selection portal",
    description=(
        "Confirms with Stripe that the PaymentIntent succeeded for exactly "
        "the deposit due on this proposal, then records the payment, opens "
        "the selection portal and creates the job. Replaying the same "
        "PaymentIntent is safe and returns the recorded result."
    ),
)
async def verify_deposit(
    proposal_id: uuid.UUID,
    body: VerifyDepositRequest,
    customer: CurrentCustomer,
    db: DBSession,
    ip_address: ClientIP,
    user_agent: UserAgent,
    cache: QueryCache,
) -> ApiResponse:
    accessTokenService.assert_quote_access(customer.session, proposal_id)
    result = await depositPaymentCoordinator.verify_deposit_and_open_portal(
        db,
        proposal_id=proposal_id,
        tenant_id=customer.session.tenant_id,
        client_id=customer.session.client_id,
        payment_intent_id=body.payment_intent_id,
        ip_address=ip_address,
        user_agent=user_agent,
        cache=cache,
    )
    message = "Deposit already verified" if result.already_processed else "Deposit verified"
    return ok(
        message,
        DepositVerificationOut(
            proposal=ProposalOut.model_validate(result.proposal),
            job=JobOut.model_validate(result.job) if result.job else None,
            already_processed=result.already_processed,
            payment_intent_id=result.payment_intent_id,
        ),
    )


@router.get("/proposals/{proposal_id}/payment-status", response_model=ApiResponse, summary="Deposit state")
async def payment_status(
    proposal_id: uuid.UUID,
    customer: CurrentCustomer,
    db: DBSession,
    cache: QueryCache,
    payment_intent_id: Optional[str] = Query(default=None, max_length=255),
) -> ApiResponse:
    proposal = await _customer_proposal(db, customer, proposal_id)
    await portalService.enforce_expiry(db, proposal, cache=cache)
    report = await depositPaymentCoordinator.check_payment_status(proposal, payment_intent_id)
    return ok("Payment status retrieved", PaymentStatusOut.model_validate(report))


# ---------------------------------------------------------------------------
# Selection portal
# ---------------------------------------------------------------------------

@router.get("/proposals/{proposal_id}/portal-status", response_model=ApiResponse, summary="Selection portal state")
async def portal_status(
    proposal_id: uuid.UUID,
    customer: CurrentCustomer,
    db: DBSession,
    cache: QueryCache,
) -> ApiResponse:
    proposal = await _customer_proposal(db, customer, proposal_id)
    status = await portalService.get_portal_status(db, proposal, cache=cache)
    return ok("Portal status retrieved", PortalStatusOut.model_validate(status))


@router.put(
    "/proposals/{proposal_id}/areas/{area_id}/selections",
    response_model=ApiResponse,
    summary="Save selections for one area",
)
async def save_area_selections(
    proposal_id: uuid.UUID,
    area_id: str,
    body: AreaSelectionRequest,
    customer: CurrentCustomer,
    db: DBSession,
    cache: QueryCache,
) -> ApiResponse:
    proposal = await _customer_proposal(db, customer, proposal_id, for_update=True)
    area = await portalService.save_area_selections(
        db, proposal, area_id, body.model_dump(exclude_unset=True), cache=cache
    )
    return ok("Selections saved", {"area": area})


@router.post(
    "/proposals/{proposal_id}/submit-selections",
    response_model=ApiResponse,
    summary="Submit final selections",
    description=(
        "Every area needs a colour choice and a sheen. Submitting closes the "
        "selection portal and notifies the contractor."
    ),
)
async def submit_selections(
    proposal_id: uuid.UUID,
    body: SubmitSelectionsRequest,
    customer: CurrentCustomer,
    db: DBSession,
    ip_address: ClientIP,
    user_agent: UserAgent,
    cache: QueryCache,
) -> ApiResponse:
    proposal = await _customer_proposal(db, customer, proposal_id, for_update=True)
    result = await portalService.submit_all_selections(
        db,
        proposal,
        {area_id: sel.model_dump(exclude_unset=True) for area_id, sel in body.selections.items()},
        ip_address=ip_address,
        user_agent=user_agent,
        cache=cache,
    )
    return ok(
        "Selections submitted",
        SubmissionOut(
            proposal=ProposalOut.model_validate(result.proposal),
            job=JobOut.model_validate(result.job) if result.job else None,
            submitted_at=result.submitted_at,
        ),
    )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@router.get("/jobs", response_model=ApiResponse, summary="List jobs in the session's scope")
async def list_jobs(customer: CurrentCustomer, db: DBSession) -> ApiResponse:
    rows = await jobService.list_client_jobs(
        db,
        tenant_id=customer.session.tenant_id,
        client_id=customer.session.client_id,
        quote_ids=accessTokenService.accessible_quote_ids(customer.session),
    )
    return ok("Jobs retrieved", {"jobs": rows})


@router.get("/jobs/{job_id}", response_model=ApiResponse, summary="Get job detail")
async def get_job(job_id: uuid.UUID, customer: CurrentCustomer, db: DBSession) -> ApiResponse:
    job = await jobService.get_client_job(
        db,
        job_id,
        tenant_id=customer.session.tenant_id,
        client_id=customer.session.client_id,
        quote_ids=accessTokenService.accessible_quote_ids(customer.session),
    )
    return ok("Job retrieved", {"job": job})
