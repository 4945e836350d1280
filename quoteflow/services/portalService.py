"""
Portal Lifecycle Controller
===========================

Gatekeeper for the customer selection portal that opens when a deposit is
verified.

- **Write gating**: saving or submitting selections requires
  ``portal_open``; otherwise ``PortalClosed`` (HTTP 403).
- **Lazy expiry**: there is no scheduler.  Whenever portal state is read or
  written, an open portal whose ``portal_closed_at`` has passed is closed
  on the spot and the contractor is notified.
- **Submission**: every area needs a colour choice (library colour, custom
  colour or other-brand flag) and a sheen.  A complete submission closes the
  portal, moves the proposal to ``selections_complete`` and propagates
  completion onto the job.  A contractor may reopen the portal afterwards;
  the customer then submits again.
- **Contractor controls**: open or reopen for a fresh window, close early,
  and review what the customer chose.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quoteflow.core.cache import CachePort, client_tag, proposal_tag
from quoteflow.core.clock import as_utc, utcnow
from quoteflow.core.errors import IncompleteSelections, NotFound, PortalClosed, WrongState
from quoteflow.models.job import Job, JobStatus
from quoteflow.models.proposal import Proposal, ProposalStatus
from quoteflow.services import auditService, documentService, notificationService
from quoteflow.services.contractorSettingsService import get_contractor_settings
from quoteflow.services.effects import EffectOutbox
from quoteflow.services.jobStateManager import ActorType, transition_job, validate_transition
from quoteflow.services.proposalStateMachine import apply_transition

logger = logging.getLogger(__name__)

SELECTION_FIELDS = (
    "brand_id",
    "product_id",
    "color_id",
    "color_name",
    "custom_color",
    "sheen",
    "is_custom",
    "is_other_brand",
)


@dataclass(frozen=True)
class PortalStatus:
    is_open: bool
    opened_at: Optional[datetime]
    expires_at: Optional[datetime]
    is_expired: bool
    selections_complete: bool
    deposit_verified: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _invalidate(outbox: EffectOutbox, proposal: Proposal, cache: CachePort | None) -> None:
    if cache is None:
        return
    outbox.add(
        "cache:invalidate",
        lambda: cache.invalidate_by_tags(
            [client_tag(proposal.tenant_id, proposal.client_id), proposal_tag(proposal.id)]
        ),
    )


def _find_area(areas: list[dict[str, Any]], area_id: str) -> int:
    for index, area in enumerate(areas):
        if str(area.get("id")) == str(area_id):
            return index
    raise NotFound(f"Area {area_id} not found")


def _clean_selection(selection: dict[str, Any]) -> dict[str, Any]:
    return {k: selection[k] for k in SELECTION_FIELDS if selection.get(k) is not None}


def is_selection_complete(selection: dict[str, Any] | None) -> bool:
    """An area is complete with a colour choice and a sheen."""
    if not selection:
        return False
    has_color = bool(
        selection.get("color_id")
        or selection.get("custom_color")
        or selection.get("is_custom")
        or selection.get("is_other_brand")
    )
    return has_color and bool(selection.get("sheen"))


def _portal_expired(proposal: Proposal, now: datetime) -> bool:
    closes = as_utc(proposal.portal_closed_at)
    return bool(proposal.portal_open and closes is not None and now > closes)


async def _job_for_proposal(db: AsyncSession, proposal: Proposal) -> Job | None:
    result = await db.execute(select(Job).where(Job.quote_id == proposal.id))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Lazy expiry
# ---------------------------------------------------------------------------

async def enforce_expiry(
    db: AsyncSession,
    proposal: Proposal,
    *,
    cache: CachePort | None = None,
) -> bool:
    """Close the portal if its window has passed.  Returns True if closed now."""
    now = utcnow()
    if not _portal_expired(proposal, now):
        return False

    scheduled_close = as_utc(proposal.portal_closed_at)
    proposal.portal_open = False
    proposal.portal_closed_at = now

    outbox = EffectOutbox()
    outbox.add(
        "audit:portal_expired",
        auditService.deferred(
            db,
            tenant_id=proposal.tenant_id,
            client_id=proposal.client_id,
            action="portal_expired",
            entity_type="Quote",
            entity_id=proposal.id,
            details={"scheduled_close": scheduled_close.isoformat() if scheduled_close else None},
        ),
    )
    outbox.add(
        "email:contractor_portal_expired",
        lambda: notificationService.notify_contractor(
            db, proposal, "portal_expired",
            "The customer did not submit selections before the portal closed.",
        ),
    )
    _invalidate(outbox, proposal, cache)
    await db.commit()
    await outbox.run()

    logger.info("Portal for proposal %s expired and was closed", proposal.id)
    return True


async def get_portal_status(
    db: AsyncSession,
    proposal: Proposal,
    *,
    cache: CachePort | None = None,
) -> PortalStatus:
    """Current portal state, closing an overdue portal as a side effect."""
    await enforce_expiry(db, proposal, cache=cache)
    closes = as_utc(proposal.portal_closed_at)
    return PortalStatus(
        is_open=proposal.portal_open,
        opened_at=as_utc(proposal.portal_opened_at),
        expires_at=closes,
        is_expired=bool(closes is not None and utcnow() > closes),
        selections_complete=proposal.selections_complete,
        deposit_verified=proposal.deposit_verified,
    )


async def _require_open(db: AsyncSession, proposal: Proposal, cache: CachePort | None) -> None:
    await enforce_expiry(db, proposal, cache=cache)
    if not proposal.portal_open:
        raise PortalClosed(
            "The selection portal is closed. Please contact your contractor.",
            details={"status": proposal.status.value},
        )


# ---------------------------------------------------------------------------
# Selections
# ---------------------------------------------------------------------------

async def save_area_selections(
    db: AsyncSession,
    proposal: Proposal,
    area_id: str,
    selection: dict[str, Any],
    *,
    cache: CachePort | None = None,
) -> dict[str, Any]:
    """Store the customer's product/colour/sheen choice for one area.

    Returns the updated area.
    """
    await _require_open(db, proposal, cache)

    areas = [dict(area) for area in (proposal.areas or [])]
    index = _find_area(areas, area_id)
    saved = {
        **(areas[index].get("selections") or {}),
        **_clean_selection(selection),
        "updated_at": utcnow().isoformat(),
    }
    areas[index]["selections"] = saved
    proposal.areas = areas

    outbox = EffectOutbox()
    _invalidate(outbox, proposal, cache)
    await db.commit()
    await outbox.run()

    logger.debug("Selections saved: proposal=%s area=%s", proposal.id, area_id)
    return areas[index]


@dataclass(frozen=True)
class SubmissionResult:
    proposal: Proposal
    job: Optional[Job]
    submitted_at: datetime


async def submit_all_selections(
    db: AsyncSession,
    proposal: Proposal,
    selections: dict[str, dict[str, Any]],
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    cache: CachePort | None = None,
) -> SubmissionResult:
    """Finalize selections for every area and close the portal.

    ``selections`` maps area id to selection; areas omitted from the map
    keep what was saved earlier.

    Raises:
        PortalClosed: The portal is not open.
        NotFound: A submitted area id does not exist.
        IncompleteSelections: Some area lacks a colour choice or a sheen.
    """
    await _require_open(db, proposal, cache)

    areas = [dict(area) for area in (proposal.areas or [])]
    for area_id in selections:
        _find_area(areas, area_id)

    now = utcnow()
    incomplete: list[str] = []
    for area in areas:
        merged = {
            **(area.get("selections") or {}),
            **_clean_selection(selections.get(str(area.get("id")), {})),
        }
        if not is_selection_complete(merged):
            incomplete.append(str(area.get("name") or area.get("id")))
        area["selections"] = {**merged, "updated_at": now.isoformat()}

    if incomplete:
        raise IncompleteSelections(
            f"Please complete selections for: {', '.join(incomplete)}",
            details={"incomplete_areas": incomplete},
        )

    resubmitted = proposal.status == ProposalStatus.SELECTIONS_COMPLETE
    if not resubmitted:
        apply_transition(proposal, ProposalStatus.SELECTIONS_COMPLETE)
    proposal.areas = areas
    proposal.selections_completed_at = now
    proposal.portal_open = False
    proposal.portal_closed_at = now

    job = await _job_for_proposal(db, proposal)
    if job is not None:
        job.customer_selections_complete = True
        job.customer_selections_submitted_at = now
        if validate_transition(job.status, JobStatus.SELECTIONS_COMPLETE, ActorType.CUSTOMER).allowed:
            transition_job(job, JobStatus.SELECTIONS_COMPLETE, ActorType.CUSTOMER)
    else:
        logger.warning("No job found for proposal %s on selection submit", proposal.id)

    outbox = EffectOutbox()
    outbox.add(
        "audit:selections_submitted",
        auditService.deferred(
            db,
            tenant_id=proposal.tenant_id,
            client_id=proposal.client_id,
            action="selections_submitted",
            entity_type="Quote",
            entity_id=proposal.id,
            details={
                "area_count": len(areas),
                "job_id": str(job.id) if job else None,
                "resubmitted": resubmitted,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        ),
    )
    outbox.add(
        "email:contractor_selections_submitted",
        lambda: notificationService.notify_contractor(
            db, proposal, "selections_submitted",
            f"{len(areas)} area(s) finalized." + (f" Job {job.job_number}." if job else ""),
        ),
    )
    documentService.queue_documents(outbox, proposal, documentService.SELECTION_DOCUMENTS, job=job)
    _invalidate(outbox, proposal, cache)
    await db.commit()
    await outbox.run()

    logger.info("Selections submitted for proposal %s (%d areas)", proposal.id, len(areas))
    return SubmissionResult(proposal=proposal, job=job, submitted_at=now)


# ---------------------------------------------------------------------------
# Contractor controls
# ---------------------------------------------------------------------------

async def open_portal(
    db: AsyncSession,
    proposal: Proposal,
    *,
    cache: CachePort | None = None,
) -> Proposal:
    """Contractor opens (or reopens) the portal for a fresh window.

    Reopening after the customer submitted lets them revise their choices:
    the proposal keeps its ``selections_complete`` status until the next
    submission, the job goes back to ``selections_pending`` and the customer
    is emailed.

    Raises:
        WrongState: The deposit has not been verified.
    """
    if not proposal.deposit_verified:
        raise WrongState(
            "Deposit must be verified before opening the portal",
            details={"status": proposal.status.value},
        )

    reopened = proposal.selections_complete
    contractor = await get_contractor_settings(db, proposal.tenant_id)
    now = utcnow()
    closes_at = now + timedelta(days=contractor.portal_duration_days)
    proposal.portal_open = True
    proposal.portal_opened_at = now
    proposal.portal_closed_at = closes_at

    job = await _job_for_proposal(db, proposal)
    if reopened and job is not None:
        job.customer_selections_complete = False
        job.portal_expires_at = closes_at
        if job.status == JobStatus.SELECTIONS_COMPLETE:
            transition_job(job, JobStatus.SELECTIONS_PENDING, ActorType.CONTRACTOR)

    outbox = EffectOutbox()
    outbox.add(
        "audit:portal_opened",
        auditService.deferred(
            db,
            tenant_id=proposal.tenant_id,
            client_id=proposal.client_id,
            action="portal_opened",
            entity_type="Quote",
            entity_id=proposal.id,
            details={"reopened": reopened, "closes_at": closes_at.isoformat()},
        ),
    )
    if reopened:
        outbox.add(
            "email:portal_reopened",
            lambda: notificationService.send_portal_reopened(proposal),
        )
    _invalidate(outbox, proposal, cache)
    await db.commit()
    await outbox.run()

    logger.info(
        "Portal %s for proposal %s until %s",
        "reopened" if reopened else "opened",
        proposal.id,
        closes_at.isoformat(),
    )
    return proposal


async def close_portal(
    db: AsyncSession,
    proposal: Proposal,
    *,
    cache: CachePort | None = None,
) -> Proposal:
    """Contractor closes the portal early.  Closing a closed portal is a no-op."""
    if not proposal.portal_open:
        return proposal

    proposal.portal_open = False
    proposal.portal_closed_at = utcnow()

    outbox = EffectOutbox()
    outbox.add(
        "audit:portal_closed",
        auditService.deferred(
            db,
            tenant_id=proposal.tenant_id,
            client_id=proposal.client_id,
            action="portal_closed",
            entity_type="Quote",
            entity_id=proposal.id,
            details={"selections_complete": proposal.selections_complete},
        ),
    )
    _invalidate(outbox, proposal, cache)
    await db.commit()
    await outbox.run()

    logger.info("Portal for proposal %s closed by contractor", proposal.id)
    return proposal


def selections_for_review(proposal: Proposal) -> dict[str, Any]:
    """The customer's selections as the contractor reviews them."""
    return {
        "id": str(proposal.id),
        "quote_number": proposal.quote_number,
        "customer_name": proposal.customer_name,
        "customer_email": proposal.customer_email,
        "selected_tier": proposal.selected_tier.value if proposal.selected_tier else None,
        "areas": [
            {
                "id": area.get("id"),
                "name": area.get("name"),
                "selections": area.get("selections") or {},
                "complete": is_selection_complete(area.get("selections")),
            }
            for area in proposal.areas or []
        ],
        "selections_complete": proposal.selections_complete,
        "selections_completed_at": (
            as_utc(proposal.selections_completed_at).isoformat()
            if proposal.selections_completed_at
            else None
        ),
        "portal_open": proposal.portal_open,
        "deposit_verified": proposal.deposit_verified,
    }


# ---------------------------------------------------------------------------
# Customer-facing reads
# ---------------------------------------------------------------------------

def proposal_summary(proposal: Proposal) -> dict[str, Any]:
    """JSON-safe listing row for a proposal."""
    return {
        "id": str(proposal.id),
        "quote_number": proposal.quote_number,
        "status": proposal.status.value,
        "job_type": proposal.job_type,
        "base_total": str(proposal.base_total) if proposal.base_total is not None else None,
        "total": str(proposal.total) if proposal.total is not None else None,
        "selected_tier": proposal.selected_tier.value if proposal.selected_tier else None,
        "valid_until": as_utc(proposal.valid_until).isoformat() if proposal.valid_until else None,
        "sent_at": as_utc(proposal.sent_at).isoformat() if proposal.sent_at else None,
        "deposit_verified": proposal.deposit_verified,
        "portal_open": proposal.portal_open,
    }


async def list_customer_proposals(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    client_id: uuid.UUID,
    quote_ids: set[uuid.UUID],
    cache: CachePort | None = None,
) -> list[dict[str, Any]]:
    """Proposals visible to a session, newest first.

    Cached per client and scope; every write to one of the client's
    proposals invalidates the client tag.  Overdue portals in scope are
    closed before the cache is consulted.
    """
    if not quote_ids:
        return []

    open_portals = await db.execute(
        select(Proposal).where(
            Proposal.tenant_id == tenant_id,
            Proposal.client_id == client_id,
            Proposal.id.in_(quote_ids),
            Proposal.portal_open.is_(True),
        )
    )
    for proposal in open_portals.scalars().all():
        await enforce_expiry(db, proposal, cache=cache)

    scope = ",".join(sorted(str(q) for q in quote_ids))
    key = f"proposals:{tenant_id}:{client_id}:{scope}"
    if cache is not None:
        cached = await cache.get(key)
        if cached is not None:
            return cached

    result = await db.execute(
        select(Proposal)
        .where(
            Proposal.tenant_id == tenant_id,
            Proposal.client_id == client_id,
            Proposal.id.in_(quote_ids),
            Proposal.status != ProposalStatus.DRAFT,
        )
        .order_by(Proposal.created_at.desc())
    )
    rows = [proposal_summary(p) for p in result.scalars().all()]

    if cache is not None:
        await cache.set(
            key,
            rows,
            tags=[client_tag(tenant_id, client_id), *(proposal_tag(q) for q in quote_ids)],
        )
    return rows
