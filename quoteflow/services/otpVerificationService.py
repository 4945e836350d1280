"""
OTP Verification Service
========================

One-time codes that upgrade a customer session from the single proposal its
magic link referenced to every proposal the client has with the tenant.

Lifecycle of a code::

    requested --> delivered --> verified
                            \\-> expired     (10 minutes)
                            \\-> exhausted   (3 attempts used)

Only the newest code of a session is current; requesting another code
invalidates earlier ones and starts a fresh attempt counter.  Requests are
rate limited per session over a rolling window.  Codes are stored as bcrypt
hashes only.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quoteflow.core.cache import CachePort, client_tag
from quoteflow.core.clock import as_utc, utcnow
from quoteflow.core.config import settings
from quoteflow.core.errors import (
    CodeMismatch,
    DeliveryFailed,
    Exhausted,
    NotFound,
    OTPExpired,
    RateLimited,
    ValidationFailed,
)
from quoteflow.integrations.email.emailGateway import EmailDeliveryError
from quoteflow.models.access import CustomerSession, OTPVerification
from quoteflow.models.proposal import Proposal, ProposalStatus
from quoteflow.models.tenant import Client
from quoteflow.services import auditService, notificationService
from quoteflow.services.effects import EffectOutbox

logger = logging.getLogger(__name__)

DELIVERY_METHODS = ("email", "sms")


# ---------------------------------------------------------------------------
# Result DTOs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OTPRequestResult:
    verification_id: uuid.UUID
    method: str
    masked_target: str
    expires_at: datetime


@dataclass(frozen=True)
class OTPVerifyResult:
    session: CustomerSession
    quote_ids: list[uuid.UUID]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def generate_code(length: int | None = None) -> str:
    digits = length or settings.otp_code_length
    low = 10 ** (digits - 1)
    return str(low + secrets.randbelow(9 * low))


def hash_code(code: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.otp_bcrypt_rounds)
    return bcrypt.hashpw(code.encode("utf-8"), salt).decode("utf-8")


def check_code(code: str, code_hash: str) -> bool:
    return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("utf-8"))


def mask_target(method: str, target: str) -> str:
    """Mask an email (``ab***@example.com``) or phone (``***1234``)."""
    if method == "email" and "@" in target:
        local, domain = target.split("@", 1)
        return f"{local[:2]}***@{domain}"
    return f"***{target[-4:]}"


async def _current_code(db: AsyncSession, session_id: uuid.UUID) -> OTPVerification | None:
    result = await db.execute(
        select(OTPVerification)
        .where(
            OTPVerification.session_id == session_id,
            OTPVerification.invalidated_at.is_(None),
        )
        .order_by(OTPVerification.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _claim_attempt(db: AsyncSession, otp_id: uuid.UUID) -> tuple[int, int] | None:
    """Use up one attempt on a code in a single conditional UPDATE.

    Returns ``(attempt_count, max_attempts)`` after the increment, or None
    when the code is locked, already used or out of attempts.  Concurrent
    guesses serialise on the row, so no more than ``max_attempts`` of them
    ever reach the hash comparison.
    """
    result = await db.execute(
        update(OTPVerification)
        .where(
            OTPVerification.id == otp_id,
            OTPVerification.verified_at.is_(None),
            OTPVerification.locked_at.is_(None),
            OTPVerification.attempt_count < OTPVerification.max_attempts,
        )
        .values(attempt_count=OTPVerification.attempt_count + 1)
        .returning(OTPVerification.attempt_count, OTPVerification.max_attempts)
        .execution_options(synchronize_session=False)
    )
    row = result.one_or_none()
    return None if row is None else (row[0], row[1])


# ---------------------------------------------------------------------------
# Code creation
# ---------------------------------------------------------------------------

async def create_otp_verification(
    db: AsyncSession,
    *,
    client_id: uuid.UUID,
    session_id: uuid.UUID,
    tenant_id: uuid.UUID,
    method: str,
    target: str,
) -> tuple[OTPVerification, str]:
    """Persist a new code for the session and return it with the plaintext.

    Prior current codes of the session are invalidated.  The row is flushed
    but not committed.

    Raises:
        ValidationFailed: Unknown delivery method.
        RateLimited: Too many requests for this session in the window.
    """
    if method not in DELIVERY_METHODS:
        raise ValidationFailed("Invalid verification method. Use email or sms.")

    now = utcnow()
    window_start = now - timedelta(minutes=settings.otp_rate_limit_window_minutes)
    recent = await db.execute(
        select(func.count(OTPVerification.id)).where(
            OTPVerification.session_id == session_id,
            OTPVerification.created_at >= window_start,
        )
    )
    if recent.scalar_one() >= settings.otp_rate_limit_count:
        logger.warning("OTP rate limit hit for session %s", session_id)
        raise RateLimited(
            f"Too many OTP requests. Please wait {settings.otp_rate_limit_window_minutes} "
            "minutes and try again.",
            details={"retry_after_seconds": settings.otp_rate_limit_window_minutes * 60},
        )

    await db.execute(
        update(OTPVerification)
        .where(
            OTPVerification.session_id == session_id,
            OTPVerification.invalidated_at.is_(None),
        )
        .values(invalidated_at=now)
        .execution_options(synchronize_session="fetch")
    )

    code = generate_code()
    otp = OTPVerification(
        tenant_id=tenant_id,
        client_id=client_id,
        session_id=session_id,
        code_hash=hash_code(code),
        delivery_method=method,
        delivery_target=target,
        attempt_count=0,
        max_attempts=settings.otp_max_attempts,
        expires_at=now + timedelta(minutes=settings.otp_expiry_minutes),
        created_at=now,
    )
    db.add(otp)
    await db.flush()
    return otp, code


async def request_otp(
    db: AsyncSession,
    session: CustomerSession,
    method: str,
    ip_address: Optional[str] = None,
) -> OTPRequestResult:
    """Create and deliver a code for the session's client.

    Delivery happens before commit; if the gateway fails the code is never
    persisted and the customer can simply ask again.
    """
    if method not in DELIVERY_METHODS:
        raise ValidationFailed("Invalid verification method. Use email or sms.")
    if session.is_verified:
        raise ValidationFailed("Session is already verified.")

    client = await db.get(Client, session.client_id)
    if client is None:
        raise NotFound("Client not found")

    target = client.email if method == "email" else client.phone
    if not target:
        raise ValidationFailed(f"No {'email address' if method == 'email' else 'phone number'} on file.")

    otp, code = await create_otp_verification(
        db,
        client_id=client.id,
        session_id=session.id,
        tenant_id=session.tenant_id,
        method=method,
        target=target,
    )

    try:
        await notificationService.send_verification_code(method, target, code, otp.expires_at)
    except EmailDeliveryError as exc:
        logger.error("OTP delivery failed: session=%s method=%s: %s", session.id, method, exc)
        await db.rollback()
        raise DeliveryFailed(
            "We could not send your verification code. Please try again.",
            details={"method": method},
        ) from exc
    otp.delivered_at = utcnow()

    outbox = EffectOutbox()
    outbox.add(
        "audit:otp_requested",
        auditService.deferred(
            db,
            tenant_id=session.tenant_id,
            client_id=client.id,
            action="otp_requested",
            entity_type="OTPVerification",
            entity_id=otp.id,
            details={"method": method},
            ip_address=ip_address,
        ),
    )
    await db.commit()
    await outbox.run()

    logger.info("OTP delivered: session=%s method=%s", session.id, method)
    return OTPRequestResult(
        verification_id=otp.id,
        method=method,
        masked_target=mask_target(method, target),
        expires_at=otp.expires_at,
    )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

async def verify_otp(
    db: AsyncSession,
    *,
    code: str,
    session_id: uuid.UUID,
    ip_address: Optional[str] = None,
    cache: CachePort | None = None,
) -> OTPVerifyResult:
    """Check ``code`` against the session's current OTP.

    On success the session becomes verified and its scope widens to every
    proposal of the client within the tenant.

    Raises:
        NotFound: No current code for the session (or it was already used).
        OTPExpired: The current code has expired.
        Exhausted: The attempt limit was reached; the correct code no
            longer helps.
        CodeMismatch: Wrong code; ``details["attempts_remaining"]`` says how
            many tries are left.
    """
    otp = await _current_code(db, session_id)
    if otp is None or otp.verified_at is not None:
        raise NotFound("No active verification code. Please request a new one.")

    now = utcnow()
    if otp.locked_at is not None or otp.attempt_count >= otp.max_attempts:
        raise Exhausted("Too many failed attempts. Please request a new code.")
    if as_utc(otp.expires_at) <= now:
        raise OTPExpired("Verification code has expired. Please request a new one.")

    # Claimed before the hash comparison: at most max_attempts guesses are
    # ever compared, however many arrive in parallel.
    claimed = await _claim_attempt(db, otp.id)
    if claimed is None:
        await db.rollback()
        raise Exhausted("Too many failed attempts. Please request a new code.")
    attempt_count, max_attempts = claimed

    if not check_code(code, otp.code_hash):
        if attempt_count >= max_attempts:
            await db.execute(
                update(OTPVerification)
                .where(OTPVerification.id == otp.id)
                .values(locked_at=now)
                .execution_options(synchronize_session=False)
            )
        await db.commit()
        logger.warning(
            "OTP mismatch: session=%s attempts=%d/%d",
            session_id,
            attempt_count,
            max_attempts,
        )
        raise CodeMismatch(
            "Invalid verification code.",
            details={"attempts_remaining": max(0, max_attempts - attempt_count)},
        )

    otp.verified_at = now
    otp.verified_ip = ip_address

    session = await db.get(CustomerSession, session_id)
    if session is None:
        raise NotFound("Session not found")

    result = await db.execute(
        select(Proposal.id)
        .where(
            Proposal.client_id == session.client_id,
            Proposal.tenant_id == session.tenant_id,
            Proposal.status != ProposalStatus.DRAFT,
        )
        .order_by(Proposal.created_at)
    )
    quote_ids = list(result.scalars().all())

    session.is_verified = True
    session.verified_at = now
    session.verification_method = otp.delivery_method
    session.quote_ids = [str(qid) for qid in quote_ids]

    outbox = EffectOutbox()
    outbox.add(
        "audit:otp_verified",
        auditService.deferred(
            db,
            tenant_id=session.tenant_id,
            client_id=session.client_id,
            action="otp_verified",
            entity_type="CustomerSession",
            entity_id=session.id,
            details={"method": otp.delivery_method, "quote_count": len(quote_ids)},
            ip_address=ip_address,
        ),
    )
    if cache is not None:
        outbox.add(
            "cache:client",
            lambda: cache.invalidate_by_tags([client_tag(session.tenant_id, session.client_id)]),
        )
    await db.commit()
    await outbox.run()

    logger.info(
        "Session %s verified via %s (%d proposals)",
        session.id,
        otp.delivery_method,
        len(quote_ids),
    )
    return OTPVerifyResult(session=session, quote_ids=quote_ids)
