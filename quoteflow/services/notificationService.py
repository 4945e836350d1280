"""
Notification Service
====================

High-level notification layer between the proposal pipeline and the email
gateway.  Each public function:

  1. Resolves the recipient (customer snapshot on the proposal, or the
     tenant's contractor notification address).
  2. Builds the subject and body for the event.
  3. Hands the message to ``emailGateway``.

These functions raise on delivery failure.  Callers never invoke them inside
a database transaction; they are queued on an ``EffectOutbox`` and run after
commit, where failures are logged and suppressed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quoteflow.core.config import settings
from quoteflow.integrations.email import emailGateway
from quoteflow.models.proposal import Proposal
from quoteflow.models.tenant import ContractorSettings, Tenant

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

async def _contractor_address(db: AsyncSession, tenant_id: uuid.UUID) -> str | None:
    """Return the address contractor notifications go to for a tenant.

    ``ContractorSettings.notification_email`` wins over the tenant's
    general contact address.
    """
    result = await db.execute(
        select(ContractorSettings.notification_email).where(
            ContractorSettings.tenant_id == tenant_id
        )
    )
    address = result.scalar_one_or_none()
    if address:
        return address

    result = await db.execute(
        select(Tenant.contact_email).where(Tenant.id == tenant_id)
    )
    address = result.scalar_one_or_none()
    if not address:
        logger.warning("No contractor notification address for tenant %s", tenant_id)
    return address


def _money(amount: Decimal | None) -> str:
    return f"${amount:,.2f}" if amount is not None else "$0.00"


def _portal_link(token: str) -> str:
    return f"{settings.customer_portal_url.rstrip('/')}/access/{token}"


# ---------------------------------------------------------------------------
# Customer-facing notifications
# ---------------------------------------------------------------------------

async def send_proposal_link(proposal: Proposal, magic_link_token: str) -> None:
    """Email the customer a magic link to view a newly sent proposal."""
    if not proposal.customer_email:
        logger.warning("Proposal %s has no customer email; link not sent", proposal.id)
        return
    await emailGateway.send_email(
        proposal.customer_email,
        f"Your proposal {proposal.quote_number} is ready",
        (
            f"Hi {proposal.customer_name},\n\n"
            f"Your proposal is ready to review:\n{_portal_link(magic_link_token)}\n"
        ),
        tags=["proposal_sent"],
    )


async def send_verification_code(method: str, target: str, code: str, expires_at: datetime) -> None:
    """Deliver a one-time verification code by email or SMS."""
    minutes = settings.otp_expiry_minutes
    if method == "sms":
        await emailGateway.send_sms(
            target, f"Your verification code is {code}. It expires in {minutes} minutes."
        )
        return
    await emailGateway.send_email(
        target,
        "Your verification code",
        (
            f"Your verification code is {code}.\n"
            f"It expires in {minutes} minutes ({expires_at.isoformat()})."
        ),
        tags=["otp"],
    )


async def send_deposit_verified(proposal: Proposal) -> None:
    """Confirm to the customer that the deposit cleared and the portal is open."""
    if not proposal.customer_email:
        return
    closes = proposal.portal_closed_at.date().isoformat() if proposal.portal_closed_at else "soon"
    await emailGateway.send_email(
        proposal.customer_email,
        f"Deposit received for {proposal.quote_number}",
        (
            f"Hi {proposal.customer_name},\n\n"
            f"We received your deposit of {_money(proposal.deposit_amount)}. "
            f"Your selection portal is now open until {closes}."
        ),
        tags=["deposit_verified"],
    )


async def send_portal_reopened(proposal: Proposal) -> None:
    if not proposal.customer_email:
        return
    closes = proposal.portal_closed_at.date().isoformat() if proposal.portal_closed_at else "soon"
    await emailGateway.send_email(
        proposal.customer_email,
        f"Your selection portal is open again for {proposal.quote_number}",
        (
            f"Hi {proposal.customer_name},\n\n"
            "Your contractor reopened the selection portal so you can revise your "
            f"colour and sheen choices. It stays open until {closes}."
        ),
        tags=["portal_reopened"],
    )


# ---------------------------------------------------------------------------
# Contractor-facing notifications
# ---------------------------------------------------------------------------

async def notify_contractor(
    db: AsyncSession,
    proposal: Proposal,
    event: str,
    detail: str = "",
) -> None:
    """Send a contractor notification about a proposal lifecycle event.

    Args:
        db: Async database session (used only to resolve the recipient).
        proposal: The proposal the event concerns.
        event: Short event label, e.g. ``"accepted"`` or ``"portal_expired"``.
        detail: Optional extra line for the message body.
    """
    address = await _contractor_address(db, proposal.tenant_id)
    if not address:
        return

    subjects = {
        "viewed": f"{proposal.customer_name} viewed proposal {proposal.quote_number}",
        "accepted": f"Proposal {proposal.quote_number} accepted",
        "declined": f"Proposal {proposal.quote_number} declined",
        "deposit_paid": f"Deposit paid on {proposal.quote_number}",
        "portal_expired": f"Selection portal closed for {proposal.quote_number}",
        "selections_submitted": f"Selections submitted for {proposal.quote_number}",
    }
    subject = subjects.get(event, f"Update on {proposal.quote_number}")
    body = (
        f"Customer: {proposal.customer_name}\n"
        f"Proposal: {proposal.quote_number}\n"
        f"Total: {_money(proposal.total)}\n"
    )
    if detail:
        body += f"\n{detail}\n"

    await emailGateway.send_email(address, subject, body, tags=[f"contractor_{event}"])
