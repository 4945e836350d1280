"""
Job Service
===========

Reads and contractor updates for jobs created by deposit verification.

Key functions:
  - update_job_status -- contractor-driven state machine transition
  - list_client_jobs  -- a customer's jobs, newest first
  - get_client_job    -- one job with its proposal's selections
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quoteflow.core.cache import CachePort, client_tag, proposal_tag
from quoteflow.core.clock import as_utc
from quoteflow.core.errors import NotFound, WrongState
from quoteflow.models.job import Job, JobStatus
from quoteflow.models.proposal import Proposal
from quoteflow.services import auditService
from quoteflow.services.effects import EffectOutbox
from quoteflow.services.jobStateManager import ActorType, get_valid_transitions, validate_transition

logger = logging.getLogger(__name__)


def _iso(value) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def job_summary(job: Job, proposal: Proposal | None = None) -> dict[str, Any]:
    """JSON-safe listing row for a job."""
    return {
        "id": str(job.id),
        "job_number": job.job_number,
        "job_name": job.job_name,
        "status": job.status.value,
        "quote_id": str(job.quote_id),
        "quote_number": proposal.quote_number if proposal is not None else None,
        "selected_tier": job.selected_tier.value if job.selected_tier else None,
        "total_amount": str(job.total_amount),
        "deposit_amount": str(job.deposit_amount),
        "balance_remaining": str(job.balance_remaining),
        "customer_selections_complete": job.customer_selections_complete,
        "created_at": _iso(job.created_at),
    }


# ---------------------------------------------------------------------------
# Contractor updates
# ---------------------------------------------------------------------------

async def update_job_status(
    db: AsyncSession,
    job_id: uuid.UUID,
    new_status: JobStatus,
    *,
    tenant_id: uuid.UUID,
    cache: CachePort | None = None,
) -> Job:
    """Move a job to ``new_status`` on the contractor's behalf.

    Raises:
        NotFound: No such job in the tenant.
        WrongState: The state machine does not allow the move;
            ``details["valid_transitions"]`` lists what it does allow.
    """
    result = await db.execute(
        select(Job).where(Job.id == job_id, Job.tenant_id == tenant_id).with_for_update()
    )
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFound("Job not found")

    old_status = job.status
    check = validate_transition(old_status, new_status, ActorType.CONTRACTOR)
    if not check.allowed:
        raise WrongState(
            check.reason or "Transition not allowed.",
            details={
                "status": old_status.value,
                "valid_transitions": [
                    s.value for s in get_valid_transitions(old_status, ActorType.CONTRACTOR)
                ],
            },
        )

    job.status = new_status

    outbox = EffectOutbox()
    outbox.add(
        "audit:job_status_changed",
        auditService.deferred(
            db,
            tenant_id=job.tenant_id,
            client_id=job.client_id,
            action="job_status_changed",
            entity_type="Job",
            entity_id=job.id,
            details={"from": old_status.value, "to": new_status.value},
        ),
    )
    if cache is not None:
        outbox.add(
            "cache:invalidate",
            lambda: cache.invalidate_by_tags(
                [client_tag(job.tenant_id, job.client_id), proposal_tag(job.quote_id)]
            ),
        )
    await db.commit()
    await outbox.run()

    logger.info(
        "Job %s transitioned: %s -> %s (actor=%s)",
        job.job_number,
        old_status.value,
        new_status.value,
        ActorType.CONTRACTOR.value,
    )
    return job


# ---------------------------------------------------------------------------
# Customer reads
# ---------------------------------------------------------------------------

async def list_client_jobs(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    client_id: uuid.UUID,
    quote_ids: set[uuid.UUID],
) -> list[dict[str, Any]]:
    """Jobs from the proposals a session can see, newest first."""
    if not quote_ids:
        return []
    result = await db.execute(
        select(Job, Proposal)
        .join(Proposal, Proposal.id == Job.quote_id)
        .where(
            Job.tenant_id == tenant_id,
            Job.client_id == client_id,
            Job.quote_id.in_(quote_ids),
        )
        .order_by(Job.created_at.desc())
    )
    return [job_summary(job, proposal) for job, proposal in result.all()]


async def get_client_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    *,
    tenant_id: uuid.UUID,
    client_id: uuid.UUID,
    quote_ids: set[uuid.UUID],
) -> dict[str, Any]:
    """One of the session's jobs, with the areas and selections behind it.

    Raises:
        NotFound: The job does not exist or is outside the session's scope.
    """
    result = await db.execute(
        select(Job, Proposal)
        .join(Proposal, Proposal.id == Job.quote_id)
        .where(
            Job.id == job_id,
            Job.tenant_id == tenant_id,
            Job.client_id == client_id,
        )
    )
    row = result.one_or_none()
    if row is None or row[0].quote_id not in quote_ids:
        raise NotFound("Job not found")

    job, proposal = row
    return {
        **job_summary(job, proposal),
        "job_address": job.job_address,
        "job_type": job.job_type,
        "customer_selections_submitted_at": _iso(job.customer_selections_submitted_at),
        "portal_expires_at": _iso(job.portal_expires_at),
        "areas": [
            {
                "id": area.get("id"),
                "name": area.get("name"),
                "selections": area.get("selections") or {},
            }
            for area in proposal.areas or []
        ],
    }
