"""
Pydantic v2 schemas for the customer portal API.

Covers:
- The ``{success, message, data}`` response envelope
- Magic link access and session payloads
- OTP request / verification
- Proposal detail, accept and decline
- Deposit payment intents, verification and status
- Selection portal status and area selections

Monetary amounts on proposals are decimal strings; Stripe amounts are
integer cents.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from quoteflow.models.job import JobStatus
from quoteflow.models.proposal import PricingTier, ProposalStatus


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

class ApiResponse(BaseModel):
    """Uniform response envelope for every portal endpoint."""

    success: bool = True
    message: str = ""
    data: Optional[Any] = None


def ok(message: str, data: Any = None) -> ApiResponse:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return ApiResponse(success=True, message=message, data=data)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class RequestOTPRequest(BaseModel):
    """Request body for sending a verification code."""

    method: Literal["email", "sms"] = Field(
        default="email",
        description="Delivery channel for the code",
    )


class VerifyOTPRequest(BaseModel):
    """Request body for checking a verification code."""

    code: str = Field(
        min_length=4,
        max_length=10,
        pattern=r"^\d+$",
        description="The numeric code the customer received",
    )


class AcceptProposalRequest(BaseModel):
    """Request body for accepting a proposal at a pricing tier."""

    selected_tier: PricingTier = Field(description="One of good, better or best")


class DeclineProposalRequest(BaseModel):
    reason: Optional[str] = Field(
        default=None,
        max_length=2000,
        description="Optional explanation shown to the contractor",
    )


class VerifyDepositRequest(BaseModel):
    """Request body for confirming a deposit after client-side payment."""

    payment_intent_id: str = Field(
        min_length=1,
        max_length=255,
        description="Stripe PaymentIntent ID returned to the browser",
    )


class AreaSelectionRequest(BaseModel):
    """Product, colour and sheen choice for one area."""

    brand_id: Optional[str] = None
    product_id: Optional[str] = None
    color_id: Optional[str] = None
    color_name: Optional[str] = Field(default=None, max_length=200)
    custom_color: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Free-text colour when not picking from the library",
    )
    sheen: Optional[str] = Field(default=None, max_length=50)
    is_custom: bool = False
    is_other_brand: bool = False


class SubmitSelectionsRequest(BaseModel):
    """Final selections keyed by area id; omitted areas keep saved choices."""

    selections: dict[str, AreaSelectionRequest] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Access / session
# ---------------------------------------------------------------------------

class ClientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


class SessionOut(BaseModel):
    """A customer session as seen by the portal frontend."""

    model_config = ConfigDict(from_attributes=True)

    session_token: str
    expires_at: datetime
    is_verified: bool
    quote_ids: list[str] = Field(default_factory=list)


class AccessOut(BaseModel):
    session: SessionOut
    client: ClientOut
    quote_id: Optional[uuid.UUID] = Field(
        default=None,
        description="Proposal the magic link was issued for",
    )


class OTPRequestOut(BaseModel):
    verification_id: uuid.UUID
    method: str
    masked_target: str
    expires_at: datetime


class OTPVerifyOut(BaseModel):
    session: SessionOut
    quote_ids: list[uuid.UUID]


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

class ProposalOut(BaseModel):
    """Proposal detail visible to the customer."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    quote_number: str
    status: ProposalStatus
    customer_name: str
    customer_address: Optional[str] = None
    job_type: Optional[str] = None
    base_total: Decimal
    total: Decimal
    selected_tier: Optional[PricingTier] = None
    tier_pricing: Optional[dict[str, Any]] = None
    deposit_amount: Optional[Decimal] = None
    valid_until: Optional[datetime] = None
    deposit_verified: bool
    portal_open: bool
    portal_closed_at: Optional[datetime] = None
    selections_complete: bool
    areas: list[dict[str, Any]] = Field(default_factory=list)
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None


class TierOptionOut(BaseModel):
    tier: PricingTier
    total: Decimal
    deposit: Decimal
    balance: Decimal


class AcceptOut(BaseModel):
    proposal: ProposalOut
    selected_tier: PricingTier
    total: Decimal
    deposit_amount: Decimal
    tiers: list[TierOptionOut]


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class PaymentIntentOut(BaseModel):
    """Everything the browser needs to confirm the deposit with Stripe.js."""

    payment_intent_id: str
    client_secret: str
    amount_cents: int
    currency: str
    publishable_key: str


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_number: str
    job_name: str
    status: JobStatus
    total_amount: Decimal
    deposit_amount: Decimal
    deposit_paid: bool
    balance_remaining: Decimal
    portal_expires_at: Optional[datetime] = None


class DepositVerificationOut(BaseModel):
    proposal: ProposalOut
    job: Optional[JobOut] = None
    already_processed: bool
    payment_intent_id: str


class PaymentStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    proposal_status: str
    deposit_verified: bool
    portal_open: bool
    transaction_id: Optional[str] = None
    stripe_status: Optional[str] = None
    stripe_amount_cents: Optional[int] = None
    transaction_matches: Optional[bool] = None


class WebhookResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_type: str
    processed: bool
    message: str


# ---------------------------------------------------------------------------
# Portal
# ---------------------------------------------------------------------------

class PortalStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    is_open: bool
    opened_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_expired: bool
    selections_complete: bool
    deposit_verified: bool


class SubmissionOut(BaseModel):
    proposal: ProposalOut
    job: Optional[JobOut] = None
    submitted_at: datetime
