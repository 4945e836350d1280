"""
Deposit Payment Coordinator
===========================

Turns an external Stripe payment confirmation into a consistent
proposal + job state, applying each payment reference at most once.

``verify_deposit_and_open_portal`` runs this sequence:

  1. Load the proposal scoped to (tenant, client, id).
  2. Idempotent replay: deposit already verified with the *same* reference
     -> success with ``already_processed=True``; nothing is re-applied.
  3. Conflict: deposit verified with a *different* reference
     -> ``PaymentConflict``; never overwritten.
  4. The proposal must be ``accepted``.
  5. Ask Stripe for the PaymentIntent status:
       succeeded               -> continue
       processing              -> PaymentProcessing (retry later)
       requires_payment_method -> PaymentFailed
       canceled                -> PaymentCanceled
       anything else           -> UnexpectedPaymentStatus
  6. Captured amount must equal the persisted deposit in cents.
  7. Intent metadata must point at this proposal.
  8. One transaction: re-read the proposal under a row lock and repeat
     2-4, record the deposit, open the portal, create exactly one Job.
  9. Any failure in 8 rolls back and raises ``DatabaseUpdateFailed`` with
     the payment reference -- the money has already moved.
 10. After commit: audit, emails, document requests, cache invalidation
     (best-effort).

``record_manual_deposit`` is the contractor path for deposits paid outside
Stripe.  It skips the Stripe checks and shares steps 8 and 10.

Concurrent duplicate calls are resolved by the unique constraints on
``jobs.quote_id`` and ``quotes.deposit_transaction_id`` plus the replay check;
a unique violation is re-read and reported as a replay when the same
reference won.  The query cache is never consulted on this path.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quoteflow.core.cache import CachePort, client_tag, proposal_tag
from quoteflow.core.clock import utcnow
from quoteflow.core.errors import (
    AlreadyProcessed,
    AmountMismatch,
    DatabaseUpdateFailed,
    InvalidPaymentReference,
    PaymentCanceled,
    PaymentConflict,
    PaymentFailed,
    PaymentProcessing,
    PaymentVerificationError,
    PortalError,
    ProposalMismatch,
    UnexpectedPaymentStatus,
    ValidationFailed,
    WrongState,
)
from quoteflow.integrations.stripe import paymentService
from quoteflow.integrations.stripe.paymentService import PaymentError, PaymentIntentResult
from quoteflow.models.job import Job, JobStatus
from quoteflow.models.proposal import Proposal, ProposalStatus
from quoteflow.services import auditService, documentService, notificationService
from quoteflow.services.contractorSettingsService import get_contractor_settings
from quoteflow.services.effects import EffectOutbox
from quoteflow.services.proposalStateMachine import load_proposal, select_deposit_transition
from quoteflow.services.tierPricingEngine import to_minor_units

logger = logging.getLogger(__name__)

# Concurrent deposits in one tenant can race for the same job number
_MAX_APPLY_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Result DTOs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DepositVerificationResult:
    proposal: Proposal
    job: Optional[Job]
    already_processed: bool
    payment_intent_id: str
    transition: Optional[str] = None


@dataclass(frozen=True)
class PaymentStatusReport:
    proposal_status: str
    deposit_verified: bool
    portal_open: bool
    transaction_id: Optional[str]
    stripe_status: Optional[str] = None
    stripe_amount_cents: Optional[int] = None
    transaction_matches: Optional[bool] = None


@dataclass(frozen=True)
class WebhookResult:
    event_type: str
    processed: bool
    message: str


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def _is_replay(proposal: Proposal, payment_intent_id: str) -> bool:
    """True for an idempotent replay; raises on a divergent reference."""
    if not proposal.deposit_verified:
        return False
    if proposal.deposit_transaction_id == payment_intent_id:
        return True
    logger.error(
        "PAYMENT CONFLICT: proposal %s already paid with %s, got %s",
        proposal.id,
        proposal.deposit_transaction_id,
        payment_intent_id,
    )
    raise PaymentConflict(
        "This deposit has already been recorded with a different payment. "
        "Please contact support.",
        details={"payment_intent_id": payment_intent_id},
    )


def _require_accepted(proposal: Proposal) -> None:
    if proposal.status != ProposalStatus.ACCEPTED:
        raise WrongState(
            f"Proposal must be accepted before a deposit can be verified "
            f"(status: {proposal.status.value})",
            details={"status": proposal.status.value},
        )
    if proposal.deposit_amount is None or proposal.deposit_amount <= 0:
        raise WrongState("Proposal has no deposit amount")


def _check_intent_status(status: str, payment_intent_id: str) -> None:
    details = {"payment_intent_id": payment_intent_id, "stripe_status": status}
    if status == "succeeded":
        return
    if status == "processing":
        raise PaymentProcessing(
            "Payment is still processing. Please check back shortly.",
            details=details,
        )
    if status == "requires_payment_method":
        raise PaymentFailed(
            "Payment failed. Please try a different payment method.",
            details=details,
        )
    if status == "canceled":
        raise PaymentCanceled("Payment was canceled.", details=details)
    raise UnexpectedPaymentStatus(
        f"Payment is not complete (status: {status}).",
        details=details,
    )


async def _retrieve_intent(payment_intent_id: str) -> paymentService.PaymentIntentSnapshot:
    try:
        return await paymentService.retrieve_payment_intent(payment_intent_id)
    except PaymentError as exc:
        if exc.is_invalid_request:
            raise InvalidPaymentReference(
                "Invalid payment reference.",
                details={"payment_intent_id": payment_intent_id},
            ) from exc
        raise PaymentVerificationError(
            "Could not verify the payment with the processor. Please try again.",
            details={"payment_intent_id": payment_intent_id},
        ) from exc


# ---------------------------------------------------------------------------
# Job creation
# ---------------------------------------------------------------------------

async def _next_job_number(db: AsyncSession, tenant_id: uuid.UUID, now: datetime) -> str:
    prefix = f"JOB-{now.year}-"
    result = await db.execute(
        select(func.count(Job.id)).where(
            Job.tenant_id == tenant_id,
            Job.job_number.like(f"{prefix}%"),
        )
    )
    return f"{prefix}{result.scalar_one() + 1:04d}"


def _build_job(proposal: Proposal, job_number: str, portal_closes: datetime) -> Job:
    total = proposal.total
    deposit = proposal.deposit_amount
    selections_done = proposal.selections_completed_at is not None
    return Job(
        tenant_id=proposal.tenant_id,
        client_id=proposal.client_id,
        quote_id=proposal.id,
        job_number=job_number,
        job_name=f"{proposal.customer_name} - {proposal.job_type or 'Painting'} Project",
        status=JobStatus.SELECTIONS_COMPLETE if selections_done else JobStatus.DEPOSIT_PAID,
        customer_name=proposal.customer_name,
        customer_email=proposal.customer_email,
        customer_phone=proposal.customer_phone,
        job_address=proposal.customer_address,
        job_type=proposal.job_type,
        total_amount=total,
        deposit_amount=deposit,
        deposit_paid=True,
        balance_remaining=total - deposit,
        selected_tier=proposal.selected_tier,
        customer_selections_complete=selections_done,
        portal_expires_at=portal_closes,
    )


async def _job_for_quote(db: AsyncSession, quote_id: uuid.UUID) -> Job | None:
    result = await db.execute(select(Job).where(Job.quote_id == quote_id))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------

def _deposit_effects(
    db: AsyncSession,
    proposal: Proposal,
    job: Job,
    *,
    action: str = "deposit_verified",
    details: dict[str, Any],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    cache: CachePort | None,
) -> EffectOutbox:
    outbox = EffectOutbox()
    outbox.add(
        f"audit:{action}",
        auditService.deferred(
            db,
            tenant_id=proposal.tenant_id,
            client_id=proposal.client_id,
            action=action,
            entity_type="Quote",
            entity_id=proposal.id,
            details={
                **details,
                "amount": str(proposal.deposit_amount),
                "job_id": str(job.id),
                "job_number": job.job_number,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        ),
    )
    outbox.add("email:deposit_verified", lambda: notificationService.send_deposit_verified(proposal))
    outbox.add(
        "email:contractor_deposit_paid",
        lambda: notificationService.notify_contractor(
            db, proposal, "deposit_paid", f"Job {job.job_number} created."
        ),
    )
    documentService.queue_documents(outbox, proposal, documentService.DEPOSIT_DOCUMENTS, job=job)
    if cache is not None:
        outbox.add(
            "cache:invalidate",
            lambda: cache.invalidate_by_tags(
                [client_tag(proposal.tenant_id, proposal.client_id), proposal_tag(proposal.id)]
            ),
        )
    return outbox


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

async def verify_deposit_and_open_portal(
    db: AsyncSession,
    *,
    proposal_id: uuid.UUID,
    tenant_id: uuid.UUID,
    client_id: Optional[uuid.UUID],
    payment_intent_id: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    cache: CachePort | None = None,
) -> DepositVerificationResult:
    """Verify a deposit payment and open the selection portal.

    Args:
        db: Async database session.  This function commits.
        proposal_id: The proposal being paid.
        tenant_id: Tenant scope.
        client_id: Client scope (None for trusted server-side callers such
            as the Stripe webhook).
        payment_intent_id: Stripe PaymentIntent id supplied by the caller.
        cache: Query cache to invalidate after commit; never read here.

    Returns:
        DepositVerificationResult; ``already_processed`` is True for a
        replay of an already-applied reference.

    Raises:
        NotFound, WrongState, PaymentConflict, PaymentProcessing,
        PaymentFailed, PaymentCanceled, UnexpectedPaymentStatus,
        AmountMismatch, ProposalMismatch, InvalidPaymentReference,
        PaymentVerificationError, DatabaseUpdateFailed.
    """
    if not payment_intent_id:
        raise ValidationFailed("Payment intent ID is required")

    proposal = await load_proposal(db, proposal_id, tenant_id=tenant_id, client_id=client_id)

    if _is_replay(proposal, payment_intent_id):
        logger.info("Deposit replay for proposal %s (%s)", proposal.id, payment_intent_id)
        return DepositVerificationResult(
            proposal=proposal,
            job=await _job_for_quote(db, proposal.id),
            already_processed=True,
            payment_intent_id=payment_intent_id,
        )
    _require_accepted(proposal)

    intent = await _retrieve_intent(payment_intent_id)
    try:
        _check_intent_status(intent.status, payment_intent_id)
    except PortalError:
        logger.warning(
            "Deposit not applied for proposal %s: intent %s is %s",
            proposal.id,
            payment_intent_id,
            intent.status,
        )
        raise

    expected_cents = to_minor_units(proposal.deposit_amount)
    if intent.amount_cents != expected_cents:
        logger.warning(
            "AMOUNT MISMATCH on proposal %s: expected %d, intent %s has %d",
            proposal.id,
            expected_cents,
            payment_intent_id,
            intent.amount_cents,
        )
        raise AmountMismatch(
            "Payment amount does not match the deposit amount.",
            details={
                "expected_cents": expected_cents,
                "received_cents": intent.amount_cents,
                "payment_intent_id": payment_intent_id,
            },
        )

    bound_to = intent.metadata.get("proposalId")
    if bound_to != str(proposal.id):
        logger.warning(
            "PROPOSAL MISMATCH: intent %s bound to %s, verifying %s",
            payment_intent_id,
            bound_to,
            proposal.id,
        )
        raise ProposalMismatch(
            "Payment does not belong to this proposal.",
            details={"payment_intent_id": payment_intent_id},
        )

    attempt = 0
    while True:
        attempt += 1
        try:
            result = await _apply_deposit(
                db,
                proposal_id=proposal_id,
                tenant_id=tenant_id,
                client_id=client_id,
                payment_intent_id=payment_intent_id,
            )
        except IntegrityError as exc:
            await db.rollback()
            replay = await _resolve_after_conflict(
                db, proposal_id, tenant_id, client_id, payment_intent_id
            )
            if replay is not None:
                return replay
            if attempt == _MAX_APPLY_ATTEMPTS:
                raise _reconciliation_error(proposal_id, payment_intent_id, exc) from exc
            logger.warning(
                "Deposit apply for proposal %s hit a unique violation (attempt %d); retrying",
                proposal_id,
                attempt,
            )
            continue
        except PortalError:
            await db.rollback()
            raise
        except Exception as exc:
            await db.rollback()
            raise _reconciliation_error(proposal_id, payment_intent_id, exc) from exc

        if not result.already_processed and result.job is not None:
            outbox = _deposit_effects(
                db,
                result.proposal,
                result.job,
                details={"payment_intent_id": payment_intent_id, "amount_cents": expected_cents},
                ip_address=ip_address,
                user_agent=user_agent,
                cache=cache,
            )
            await outbox.run()
        return result


async def _record_deposit(
    db: AsyncSession,
    proposal: Proposal,
    *,
    payment_reference: Optional[str],
    payment_method: str,
    now: datetime,
) -> tuple[Job, datetime, str]:
    """Mark the deposit paid, open the portal and add the job (not committed).

    Returns the job, the portal close time and the capability name used.
    """
    contractor = await get_contractor_settings(db, proposal.tenant_id)
    closes_at = now + timedelta(days=contractor.portal_duration_days)

    transition = select_deposit_transition(proposal)
    transition.apply(
        proposal,
        payment_reference=payment_reference,
        payment_method=payment_method,
        now=now,
    )
    proposal.portal_open = True
    proposal.portal_opened_at = now
    proposal.portal_closed_at = closes_at

    job = _build_job(proposal, await _next_job_number(db, proposal.tenant_id, now), closes_at)
    db.add(job)
    await db.flush()
    return job, closes_at, transition.name


async def _apply_deposit(
    db: AsyncSession,
    *,
    proposal_id: uuid.UUID,
    tenant_id: uuid.UUID,
    client_id: Optional[uuid.UUID],
    payment_intent_id: str,
) -> DepositVerificationResult:
    """The transactional core: lock, re-check, record, open portal, create job."""
    proposal = await load_proposal(
        db, proposal_id, tenant_id=tenant_id, client_id=client_id, for_update=True
    )

    if _is_replay(proposal, payment_intent_id):
        await db.commit()
        return DepositVerificationResult(
            proposal=proposal,
            job=await _job_for_quote(db, proposal.id),
            already_processed=True,
            payment_intent_id=payment_intent_id,
        )
    _require_accepted(proposal)

    job, closes_at, transition = await _record_deposit(
        db,
        proposal,
        payment_reference=payment_intent_id,
        payment_method="stripe",
        now=utcnow(),
    )
    await db.commit()

    logger.info(
        "Deposit verified: proposal=%s intent=%s job=%s via %s; portal open until %s",
        proposal.id,
        payment_intent_id,
        job.job_number,
        transition,
        closes_at.isoformat(),
    )
    return DepositVerificationResult(
        proposal=proposal,
        job=job,
        already_processed=False,
        payment_intent_id=payment_intent_id,
        transition=transition,
    )


async def _resolve_after_conflict(
    db: AsyncSession,
    proposal_id: uuid.UUID,
    tenant_id: uuid.UUID,
    client_id: Optional[uuid.UUID],
    payment_intent_id: str,
) -> DepositVerificationResult | None:
    """After a unique violation, report a replay if the same reference won."""
    proposal = await load_proposal(db, proposal_id, tenant_id=tenant_id, client_id=client_id)
    if _is_replay(proposal, payment_intent_id):
        logger.info(
            "Concurrent deposit verification for proposal %s resolved as replay",
            proposal_id,
        )
        return DepositVerificationResult(
            proposal=proposal,
            job=await _job_for_quote(db, proposal_id),
            already_processed=True,
            payment_intent_id=payment_intent_id,
        )
    return None


def _reconciliation_error(
    proposal_id: uuid.UUID,
    payment_intent_id: str,
    exc: Exception,
) -> DatabaseUpdateFailed:
    logger.critical(
        "RECONCILIATION REQUIRED: payment %s captured but proposal %s was not updated: %s",
        payment_intent_id,
        proposal_id,
        exc,
    )
    return DatabaseUpdateFailed(
        "Payment was received but the proposal could not be updated. "
        "Please contact support with your payment reference.",
        details={
            "payment_intent_id": payment_intent_id,
            "proposal_id": str(proposal_id),
        },
    )


# ---------------------------------------------------------------------------
# Manual deposits
# ---------------------------------------------------------------------------

MANUAL_PAYMENT_METHODS = ("cash", "check", "wire_transfer", "other")


async def record_manual_deposit(
    db: AsyncSession,
    proposal_id: uuid.UUID,
    *,
    tenant_id: uuid.UUID,
    payment_method: str,
    amount: Optional[Decimal] = None,
    transaction_id: Optional[str] = None,
    notes: Optional[str] = None,
    cache: CachePort | None = None,
) -> DepositVerificationResult:
    """Contractor records a deposit received outside Stripe.

    Opens the selection portal and creates the job exactly like a verified
    card payment.  The proposal need not have been accepted online; a
    ``sent`` or ``viewed`` proposal is recorded through the direct deposit
    transition.  ``amount`` overrides the stored deposit when given.

    Raises:
        ValidationFailed: Unknown payment method, or no usable amount.
        NotFound: No such proposal in the tenant.
        AlreadyProcessed: The deposit is already verified.
        WrongState: The proposal is a draft or was declined.
        PaymentConflict: ``transaction_id`` is already recorded on another
            proposal.
    """
    if payment_method not in MANUAL_PAYMENT_METHODS:
        raise ValidationFailed(
            "Invalid payment method",
            details={"valid_methods": list(MANUAL_PAYMENT_METHODS)},
        )
    if amount is not None and amount <= 0:
        raise ValidationFailed("Deposit amount must be greater than zero")

    proposal = await load_proposal(db, proposal_id, tenant_id=tenant_id, for_update=True)
    if proposal.deposit_verified:
        raise AlreadyProcessed(
            "Deposit already verified",
            details={"status": proposal.status.value},
        )
    if proposal.status in (ProposalStatus.DRAFT, ProposalStatus.DECLINED):
        raise WrongState(
            f"Cannot record a deposit on a {proposal.status.value} proposal",
            details={"status": proposal.status.value},
        )
    if amount is not None:
        proposal.deposit_amount = amount
    if proposal.deposit_amount is None:
        raise ValidationFailed("Deposit amount is required")

    try:
        job, closes_at, transition = await _record_deposit(
            db,
            proposal,
            payment_reference=transaction_id,
            payment_method=payment_method,
            now=utcnow(),
        )
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise PaymentConflict(
            "This deposit conflicts with a payment already recorded.",
            details={"transaction_id": transaction_id},
        ) from exc

    logger.info(
        "Manual deposit recorded: proposal=%s method=%s job=%s via %s; portal open until %s",
        proposal.id,
        payment_method,
        job.job_number,
        transition,
        closes_at.isoformat(),
    )
    outbox = _deposit_effects(
        db,
        proposal,
        job,
        action="deposit_verified_manual",
        details={
            "payment_method": payment_method,
            "transaction_id": transaction_id,
            "notes": notes,
        },
        cache=cache,
    )
    await outbox.run()
    return DepositVerificationResult(
        proposal=proposal,
        job=job,
        already_processed=False,
        payment_intent_id=transaction_id or "",
        transition=transition,
    )


# ---------------------------------------------------------------------------
# Payment intents and status
# ---------------------------------------------------------------------------

async def create_deposit_payment_intent(
    db: AsyncSession,
    proposal: Proposal,
) -> PaymentIntentResult:
    """Create a Stripe PaymentIntent for an accepted proposal's deposit.

    The amount is the persisted ``deposit_amount`` in cents, the same value
    verification later compares against.
    """
    if proposal.deposit_verified:
        raise WrongState("Deposit has already been paid")
    _require_accepted(proposal)

    amount_cents = to_minor_units(proposal.deposit_amount)
    metadata = {
        "proposalId": str(proposal.id),
        "quoteNumber": proposal.quote_number,
        "tenantId": str(proposal.tenant_id),
        "clientId": str(proposal.client_id),
        "selectedTier": proposal.selected_tier.value if proposal.selected_tier else "",
    }
    try:
        intent = await paymentService.create_payment_intent(amount_cents, metadata)
    except PaymentError as exc:
        raise PaymentVerificationError(
            "Could not create the payment. Please try again.",
            details={"stripe_error_code": exc.stripe_error_code},
        ) from exc

    proposal.payment_intent_id = intent.id
    await db.commit()
    return intent


async def check_payment_status(
    proposal: Proposal,
    payment_intent_id: Optional[str] = None,
) -> PaymentStatusReport:
    """Report the proposal's deposit state, optionally with Stripe's view."""
    report: dict[str, Any] = {
        "proposal_status": proposal.status.value,
        "deposit_verified": proposal.deposit_verified,
        "portal_open": proposal.portal_open,
        "transaction_id": proposal.deposit_transaction_id,
    }
    if payment_intent_id:
        intent = await _retrieve_intent(payment_intent_id)
        report.update(
            stripe_status=intent.status,
            stripe_amount_cents=intent.amount_cents,
            transaction_matches=proposal.deposit_transaction_id == payment_intent_id,
        )
    return PaymentStatusReport(**report)


# ---------------------------------------------------------------------------
# Webhook events
# ---------------------------------------------------------------------------

async def handle_payment_event(
    db: AsyncSession,
    event: Any,
    *,
    cache: CachePort | None = None,
) -> WebhookResult:
    """Apply a verified Stripe webhook event.

    ``payment_intent.succeeded`` runs the full verification path; customer
    errors are logged and acknowledged, internal failures propagate so
    Stripe redelivers.
    """
    event_type = event.type
    intent = event.data.object

    if event_type == "payment_intent.payment_failed":
        last_error = getattr(intent, "last_payment_error", None)
        logger.warning(
            "Payment failed: intent=%s proposal=%s error=%s",
            intent.id,
            intent.metadata.get("proposalId"),
            getattr(last_error, "message", last_error),
        )
        return WebhookResult(event_type, True, f"Payment {intent.id} failure logged")

    if event_type != "payment_intent.succeeded":
        return WebhookResult(event_type, False, f"Unhandled event type {event_type}")

    metadata = intent.metadata or {}
    try:
        proposal_id = uuid.UUID(metadata.get("proposalId", ""))
        tenant_id = uuid.UUID(metadata.get("tenantId", ""))
    except ValueError:
        logger.error("PaymentIntent %s has no usable proposal metadata", intent.id)
        return WebhookResult(event_type, False, "Missing proposal metadata")

    try:
        result = await verify_deposit_and_open_portal(
            db,
            proposal_id=proposal_id,
            tenant_id=tenant_id,
            client_id=None,
            payment_intent_id=intent.id,
            cache=cache,
        )
    except PortalError as exc:
        if exc.status_code >= 500:
            raise
        logger.warning("Webhook deposit for %s not applied: %s", proposal_id, exc.code)
        return WebhookResult(event_type, False, exc.message)

    message = (
        f"Deposit for proposal {proposal_id} already recorded"
        if result.already_processed
        else f"Deposit for proposal {proposal_id} recorded"
    )
    return WebhookResult(event_type, True, message)
