"""
Stripe Payment Service
======================

Customer deposit payments through Stripe:
- Payment intent creation for an accepted proposal's deposit
- Payment intent retrieval (status, captured amount, metadata) used to
  verify a deposit before the selection portal opens

All monetary amounts are in cents (integers) to avoid floating-point issues.
Stripe keys come from application settings:
  STRIPE_SECRET_KEY, STRIPE_PUBLISHABLE_KEY, STRIPE_WEBHOOK_SECRET
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import stripe

from quoteflow.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Stripe SDK configuration
# ---------------------------------------------------------------------------

stripe.api_key = settings.stripe_secret_key
stripe.api_version = "2024-06-20"

STRIPE_PUBLISHABLE_KEY = settings.stripe_publishable_key


# ---------------------------------------------------------------------------
# Custom exception
# ---------------------------------------------------------------------------

class PaymentError(Exception):
    """Raised when a Stripe payment operation fails.

    Attributes:
        message: Human-readable error description.
        stripe_error_code: The Stripe error code, if available.
        stripe_error_type: The Stripe error type, if available.
        decline_code: The decline code from the card issuer, if available.
    """

    def __init__(
        self,
        message: str,
        stripe_error_code: str | None = None,
        stripe_error_type: str | None = None,
        decline_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stripe_error_code = stripe_error_code
        self.stripe_error_type = stripe_error_type
        self.decline_code = decline_code

    @property
    def is_invalid_request(self) -> bool:
        """True when Stripe rejected the request itself (e.g. unknown id)."""
        return self.stripe_error_type == "invalid_request_error"

    def __repr__(self) -> str:
        return (
            f"PaymentError(message={self.message!r}, "
            f"code={self.stripe_error_code!r}, "
            f"type={self.stripe_error_type!r})"
        )


# ---------------------------------------------------------------------------
# Response dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PaymentIntentResult:
    """Result of creating a Stripe PaymentIntent."""
    id: str
    client_secret: str
    status: str
    amount_cents: int
    currency: str


@dataclass(frozen=True)
class PaymentIntentSnapshot:
    """Point-in-time view of a PaymentIntent used for deposit verification."""
    id: str
    status: str
    amount_cents: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)
    amount_received_cents: Optional[int] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _handle_stripe_error(exc: stripe.StripeError) -> PaymentError:
    """Convert a Stripe SDK exception into a PaymentError."""
    error_body = getattr(exc, "error", None)

    code = getattr(error_body, "code", None) if error_body else None
    error_type = getattr(error_body, "type", None) if error_body else None
    decline_code = getattr(error_body, "decline_code", None) if error_body else None

    logger.error(
        "Stripe API error: %s (code=%s, type=%s, decline_code=%s)",
        str(exc),
        code,
        error_type,
        decline_code,
    )

    return PaymentError(
        message=str(exc),
        stripe_error_code=code,
        stripe_error_type=error_type,
        decline_code=decline_code,
    )


def _metadata_dict(metadata: Any) -> dict[str, str]:
    if not metadata:
        return {}
    if hasattr(metadata, "to_dict"):
        metadata = metadata.to_dict()
    return {str(k): str(v) for k, v in dict(metadata).items()}


# ---------------------------------------------------------------------------
# Payment Intent operations
# ---------------------------------------------------------------------------

async def create_payment_intent(
    amount_cents: int,
    metadata: dict[str, str],
    currency: str | None = None,
    idempotency_key: str | None = None,
) -> PaymentIntentResult:
    """Create a Stripe PaymentIntent for a proposal deposit.

    Args:
        amount_cents: Amount to charge in the smallest currency unit (cents).
        metadata: Binding data echoed back on retrieval (``proposalId`` etc.).
        currency: Three-letter ISO currency code (defaults to settings).
        idempotency_key: Optional Stripe idempotency key.

    Returns:
        PaymentIntentResult with the PaymentIntent details.

    Raises:
        PaymentError: If the Stripe API call fails.
        ValueError: If amount_cents is non-positive.
    """
    if amount_cents <= 0:
        raise ValueError(f"Payment amount must be positive, got {amount_cents}")

    currency = (currency or settings.stripe_currency).lower()
    params: dict = {
        "amount": amount_cents,
        "currency": currency,
        "metadata": {**metadata, "platform": "quoteflow"},
        "automatic_payment_methods": {"enabled": True},
    }
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    try:
        intent = stripe.PaymentIntent.create(**params)
    except stripe.StripeError as exc:
        raise _handle_stripe_error(exc) from exc

    logger.info(
        "PaymentIntent created: id=%s, proposal=%s, amount=%d %s",
        intent.id,
        metadata.get("proposalId"),
        amount_cents,
        currency,
    )

    return PaymentIntentResult(
        id=intent.id,
        client_secret=intent.client_secret,
        status=intent.status,
        amount_cents=intent.amount,
        currency=intent.currency,
    )


async def retrieve_payment_intent(payment_intent_id: str) -> PaymentIntentSnapshot:
    """Retrieve a PaymentIntent's status, amount and metadata.

    Raises:
        PaymentError: If the retrieval fails.  ``is_invalid_request`` is set
            when the id is unknown to Stripe.
    """
    try:
        intent = stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as exc:
        raise _handle_stripe_error(exc) from exc

    return PaymentIntentSnapshot(
        id=intent.id,
        status=intent.status,
        amount_cents=intent.amount,
        currency=intent.currency,
        metadata=_metadata_dict(intent.metadata),
        amount_received_cents=getattr(intent, "amount_received", None),
    )
