"""
Access Token Service
====================

Passwordless customer access to the proposal portal.

Magic links
    A contractor sends a proposal; the customer receives a link carrying a
    128-character random token.  A link validates against its expiry,
    revocation, tenant/client scope and optional use limit.  Multi-use links
    for the same client, tenant and purpose are reused (and their expiry
    extended, capped at ``magic_link_max_expiry_days``) rather than
    multiplied.

Customer sessions
    A valid link opens -- or resumes -- a ``CustomerSession`` for the client
    within the tenant.  The session token is a signed JWT and is also
    stored, so sessions can be revoked.  Sessions start *unverified*, scoped
    to the single proposal the link referenced; OTP verification (see
    ``otpVerificationService``) upgrades them to every proposal the client
    has with the tenant.

Audit records for successful validations are written after commit and never
affect the result.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quoteflow.core.clock import as_utc, utcnow
from quoteflow.core.config import settings
from quoteflow.core.errors import NotFound, SessionExpired, SessionInvalid, VerificationRequired
from quoteflow.models.access import CustomerSession, MagicLink
from quoteflow.models.proposal import Proposal
from quoteflow.models.tenant import Client
from quoteflow.services import auditService
from quoteflow.services.effects import EffectOutbox

logger = logging.getLogger(__name__)

SESSION_TOKEN_TYPE = "customer_session"


# ---------------------------------------------------------------------------
# Result DTOs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MagicLinkValidation:
    """Outcome of validating a magic link token.

    ``reason`` is one of ``not_found``, ``revoked``, ``expired``,
    ``already_used`` or ``tenant_mismatch`` when ``valid`` is False.
    """
    valid: bool
    reason: str | None = None
    message: str | None = None
    client: Client | None = None
    magic_link: MagicLink | None = None
    quote: Proposal | None = None
    session: CustomerSession | None = None


@dataclass(frozen=True)
class SessionValidation:
    valid: bool
    session: CustomerSession
    client: Client


_REASON_MESSAGES: dict[str, str] = {
    "not_found": "This link is invalid.",
    "revoked": "This link has been revoked. Please contact your contractor.",
    "expired": "This link has expired. Please request a new one.",
    "already_used": "This link has already been used.",
    "tenant_mismatch": "This link is not valid for this account.",
}


def _invalid(reason: str) -> MagicLinkValidation:
    return MagicLinkValidation(valid=False, reason=reason, message=_REASON_MESSAGES[reason])


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------

def generate_link_token() -> str:
    """128 hex characters of cryptographically secure randomness."""
    return secrets.token_hex(64)


def issue_session_token(
    client_id: uuid.UUID,
    tenant_id: uuid.UUID,
    expires_at: datetime,
) -> str:
    payload = {
        "type": SESSION_TOKEN_TYPE,
        "client_id": str(client_id),
        "tenant_id": str(tenant_id),
        "exp": expires_at,
        "iat": utcnow(),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def accessible_quote_ids(session: CustomerSession) -> set[uuid.UUID]:
    return {uuid.UUID(str(qid)) for qid in (session.quote_ids or [])}


def assert_quote_access(session: CustomerSession, quote_id: uuid.UUID) -> None:
    """Raise unless the session may open ``quote_id``.

    Unverified sessions only see the proposal from their magic link; asking
    for any other proposal prompts for OTP verification.
    """
    if quote_id in accessible_quote_ids(session):
        return
    if not session.is_verified:
        raise VerificationRequired(
            "Verify your identity to view other proposals.",
            details={"quote_id": str(quote_id)},
        )
    raise NotFound("Proposal not found")


# ---------------------------------------------------------------------------
# Magic links
# ---------------------------------------------------------------------------

async def create_magic_link(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    client_id: uuid.UUID,
    quote_id: Optional[uuid.UUID] = None,
    purpose: str = "quote_view",
    expiry_days: Optional[int] = None,
    is_single_use: bool = False,
    max_uses: Optional[int] = None,
) -> MagicLink:
    """Issue a magic link, or extend and return an existing reusable one.

    Expiry is capped at ``magic_link_max_expiry_days``.  The link is flushed
    but not committed; the caller owns the transaction.
    """
    days = min(
        expiry_days or settings.magic_link_expiry_days,
        settings.magic_link_max_expiry_days,
    )
    now = utcnow()
    expires_at = now + timedelta(days=days)

    if not is_single_use:
        result = await db.execute(
            select(MagicLink)
            .where(
                MagicLink.tenant_id == tenant_id,
                MagicLink.client_id == client_id,
                MagicLink.purpose == purpose,
                MagicLink.is_single_use.is_(False),
                MagicLink.revoked_at.is_(None),
                MagicLink.expires_at > now,
            )
            .order_by(MagicLink.created_at.desc())
            .limit(1)
        )
        existing = result.scalar_one_or_none()
        if existing is not None and (existing.max_uses is None or existing.use_count < existing.max_uses):
            existing.expires_at = max(as_utc(existing.expires_at), expires_at)
            if quote_id is not None:
                existing.quote_id = quote_id
            await db.flush()
            logger.info(
                "Reusing magic link %s for client %s (expires %s)",
                existing.id,
                client_id,
                existing.expires_at.isoformat(),
            )
            return existing

    link = MagicLink(
        token=generate_link_token(),
        tenant_id=tenant_id,
        client_id=client_id,
        quote_id=quote_id,
        purpose=purpose,
        expires_at=expires_at,
        is_single_use=is_single_use,
        max_uses=1 if is_single_use else max_uses,
        use_count=0,
    )
    db.add(link)
    await db.flush()
    logger.info("Magic link issued: link=%s client=%s quote=%s", link.id, client_id, quote_id)
    return link


async def revoke_magic_link(db: AsyncSession, link_id: uuid.UUID, tenant_id: uuid.UUID) -> MagicLink:
    result = await db.execute(
        select(MagicLink).where(MagicLink.id == link_id, MagicLink.tenant_id == tenant_id)
    )
    link = result.scalar_one_or_none()
    if link is None:
        raise NotFound("Magic link not found")
    if link.revoked_at is None:
        link.revoked_at = utcnow()
        await db.flush()
        logger.info("Magic link revoked: %s", link.id)
    return link


def _link_state(link: MagicLink, now: datetime) -> str | None:
    if link.revoked_at is not None:
        return "revoked"
    if as_utc(link.expires_at) <= now:
        return "expired"
    if link.max_uses is not None and link.use_count >= link.max_uses:
        return "already_used"
    return None


async def validate_magic_link(
    db: AsyncSession,
    token: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    *,
    tenant_id: Optional[uuid.UUID] = None,
) -> MagicLinkValidation:
    """Validate a magic link token and open or resume a customer session.

    Invalid links are reported in the result, not raised, so the caller can
    render a friendly page for each reason.  A valid link is consumed
    (use count, last access) and the session is committed before the audit
    effect runs.
    """
    result = await db.execute(select(MagicLink).where(MagicLink.token == token))
    link = result.scalar_one_or_none()
    if link is None:
        logger.warning("Magic link not found (ip=%s)", ip_address)
        return _invalid("not_found")

    now = utcnow()
    reason = _link_state(link, now)
    if reason is not None:
        logger.warning("Magic link %s rejected: %s", link.id, reason)
        return _invalid(reason)

    if tenant_id is not None and tenant_id != link.tenant_id:
        logger.warning("Magic link %s presented for foreign tenant %s", link.id, tenant_id)
        return _invalid("tenant_mismatch")

    client = await db.get(Client, link.client_id)
    if client is None or client.tenant_id != link.tenant_id:
        return _invalid("tenant_mismatch")

    quote: Proposal | None = None
    if link.quote_id is not None:
        quote = await db.get(Proposal, link.quote_id)
        if quote is None:
            return _invalid("not_found")
        if quote.tenant_id != link.tenant_id or quote.client_id != link.client_id:
            return _invalid("tenant_mismatch")

    link.use_count += 1
    link.last_accessed_at = now
    link.last_accessed_ip = ip_address
    if link.max_uses is not None and link.use_count >= link.max_uses:
        link.used_at = now

    session = await _create_or_get_session(db, link, ip_address, user_agent, now)

    outbox = EffectOutbox()
    outbox.add(
        "audit:magic_link_accessed",
        auditService.deferred(
            db,
            tenant_id=link.tenant_id,
            client_id=link.client_id,
            action="magic_link_accessed",
            entity_type="MagicLink",
            entity_id=link.id,
            details={"quote_id": str(link.quote_id) if link.quote_id else None, "session_id": str(session.id)},
            ip_address=ip_address,
            user_agent=user_agent,
        ),
    )
    await db.commit()
    await outbox.run()

    return MagicLinkValidation(
        valid=True,
        client=client,
        magic_link=link,
        quote=quote,
        session=session,
    )


async def _create_or_get_session(
    db: AsyncSession,
    link: MagicLink,
    ip_address: Optional[str],
    user_agent: Optional[str],
    now: datetime,
) -> CustomerSession:
    """Resume the client's live session for this tenant or open a new one.

    An unverified session is re-scoped to the link's proposal; a verified
    session keeps its wider scope and gains the link's proposal.
    """
    result = await db.execute(
        select(CustomerSession)
        .where(
            CustomerSession.client_id == link.client_id,
            CustomerSession.tenant_id == link.tenant_id,
            CustomerSession.revoked_at.is_(None),
            CustomerSession.expires_at > now,
        )
        .order_by(CustomerSession.created_at.desc())
        .limit(1)
    )
    session = result.scalar_one_or_none()
    link_quotes = [str(link.quote_id)] if link.quote_id else []

    if session is not None:
        if session.is_verified:
            merged = list(session.quote_ids or [])
            merged.extend(q for q in link_quotes if q not in merged)
            session.quote_ids = merged
        else:
            session.quote_ids = link_quotes
        session.magic_link_id = link.id
        session.last_activity_at = now
        session.ip_address = ip_address
        session.user_agent = user_agent
        await db.flush()
        return session

    expires_at = as_utc(link.expires_at)
    session = CustomerSession(
        session_token=issue_session_token(link.client_id, link.tenant_id, expires_at),
        tenant_id=link.tenant_id,
        client_id=link.client_id,
        magic_link_id=link.id,
        quote_ids=link_quotes,
        is_verified=False,
        expires_at=expires_at,
        last_activity_at=now,
        ip_address=ip_address,
        user_agent=user_agent,
        activity_count=0,
    )
    db.add(session)
    await db.flush()
    logger.info("Customer session opened: session=%s client=%s", session.id, link.client_id)
    return session


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

async def validate_session(
    db: AsyncSession,
    token: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> SessionValidation:
    """Validate a session token and record activity.

    Raises:
        SessionInvalid: Bad signature, unknown token, or revoked session.
        SessionExpired: The session's expiry has passed.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise SessionExpired("Your session has expired. Please use your link again.")
    except jwt.InvalidTokenError:
        raise SessionInvalid("Invalid session.")

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise SessionInvalid("Invalid session.")

    result = await db.execute(
        select(CustomerSession).where(CustomerSession.session_token == token)
    )
    session = result.scalar_one_or_none()
    if session is None or session.revoked_at is not None:
        raise SessionInvalid("Invalid session.")

    now = utcnow()
    if as_utc(session.expires_at) <= now:
        raise SessionExpired("Your session has expired. Please use your link again.")

    client = await db.get(Client, session.client_id)
    if client is None or client.tenant_id != session.tenant_id:
        raise SessionInvalid("Invalid session.")

    session.last_activity_at = now
    session.activity_count = (session.activity_count or 0) + 1
    if ip_address:
        session.ip_address = ip_address
    if user_agent:
        session.user_agent = user_agent

    outbox = EffectOutbox()
    outbox.add(
        "audit:session_validated",
        auditService.deferred(
            db,
            tenant_id=session.tenant_id,
            client_id=session.client_id,
            action="session_validated",
            entity_type="CustomerSession",
            entity_id=session.id,
            ip_address=ip_address,
            user_agent=user_agent,
        ),
    )
    await db.commit()
    await outbox.run()

    return SessionValidation(valid=True, session=session, client=client)


async def revoke_session(db: AsyncSession, session: CustomerSession) -> CustomerSession:
    """Revoke a session (customer logout).  Idempotent."""
    if session.revoked_at is None:
        session.revoked_at = utcnow()
        await db.commit()
        logger.info("Customer session revoked: %s", session.id)
    return session
