"""
Portal error taxonomy
=====================

Every failure the proposal pipeline can surface to a customer is a
``PortalError`` subclass carrying a stable machine-readable ``code`` and the
HTTP status it maps to.  Route handlers never build error responses by hand;
the exception handler registered in ``quoteflow.main`` renders the envelope::

    {"success": false, "message": "...", "error": {"code": "...", ...}}
"""

from __future__ import annotations

from typing import Any


class PortalError(Exception):
    """Base class for all pipeline errors.

    Attributes:
        message: Human-readable error description.
        code: Stable upper-snake error code.
        status_code: HTTP status the error is rendered with.
        details: Extra structured context (payment references, counters).
    """

    code: str = "PORTAL_ERROR"
    status_code: int = 400

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, **self.details}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!r}, "
            f"status={self.status_code}, message={self.message!r})"
        )


# ---------------------------------------------------------------------------
# Lookup / validation
# ---------------------------------------------------------------------------

class NotFound(PortalError):
    code = "NOT_FOUND"
    status_code = 404


class ValidationFailed(PortalError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidPricingInput(ValidationFailed):
    code = "INVALID_PRICING_INPUT"


class IncompleteSelections(ValidationFailed):
    code = "INCOMPLETE_SELECTIONS"


# ---------------------------------------------------------------------------
# Authentication / authorization
# ---------------------------------------------------------------------------

class SessionInvalid(PortalError):
    code = "SESSION_INVALID"
    status_code = 401


class SessionExpired(PortalError):
    code = "SESSION_EXPIRED"
    status_code = 401


class MagicLinkInvalid(PortalError):
    code = "MAGIC_LINK_INVALID"
    status_code = 401


class VerificationRequired(PortalError):
    code = "VERIFICATION_REQUIRED"
    status_code = 403


class PortalClosed(PortalError):
    code = "PORTAL_CLOSED"
    status_code = 403


# ---------------------------------------------------------------------------
# OTP
# ---------------------------------------------------------------------------

class RateLimited(PortalError):
    code = "RATE_LIMITED"
    status_code = 429


class CodeMismatch(PortalError):
    code = "INVALID_CODE"
    status_code = 400


class OTPExpired(PortalError):
    code = "OTP_EXPIRED"
    status_code = 400


class Exhausted(PortalError):
    code = "OTP_EXHAUSTED"
    status_code = 400


class DeliveryFailed(PortalError):
    code = "DELIVERY_FAILED"
    status_code = 502


# ---------------------------------------------------------------------------
# Proposal state guards
# ---------------------------------------------------------------------------

class WrongState(PortalError):
    code = "WRONG_STATE"
    status_code = 409


class AlreadyProcessed(PortalError):
    code = "ALREADY_PROCESSED"
    status_code = 409


class ProposalExpired(PortalError):
    code = "PROPOSAL_EXPIRED"
    status_code = 400


# ---------------------------------------------------------------------------
# Deposit payment verification
# ---------------------------------------------------------------------------

class PaymentConflict(PortalError):
    code = "PAYMENT_CONFLICT"
    status_code = 409


class PaymentProcessing(PortalError):
    code = "PAYMENT_PROCESSING"
    status_code = 202


class PaymentFailed(PortalError):
    code = "PAYMENT_FAILED"
    status_code = 400


class PaymentCanceled(PortalError):
    code = "PAYMENT_CANCELED"
    status_code = 400


class UnexpectedPaymentStatus(PortalError):
    code = "PAYMENT_UNEXPECTED_STATUS"
    status_code = 400


class AmountMismatch(PortalError):
    code = "AMOUNT_MISMATCH"
    status_code = 400


class ProposalMismatch(PortalError):
    code = "PROPOSAL_MISMATCH"
    status_code = 400


class InvalidPaymentReference(PortalError):
    code = "INVALID_PAYMENT_INTENT"
    status_code = 400


class PaymentVerificationError(PortalError):
    code = "STRIPE_VERIFICATION_ERROR"
    status_code = 500


class DatabaseUpdateFailed(PortalError):
    """Raised when the internal store could not record a payment that the
    processor already captured.  Always carries ``payment_intent_id`` so the
    charge can be reconciled by hand."""

    code = "DATABASE_UPDATE_FAILED"
    status_code = 500
