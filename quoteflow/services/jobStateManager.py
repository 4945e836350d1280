"""
Job State Manager
=================

Finite state machine governing job status transitions.  A job's lifecycle
is independent of its proposal's once the deposit is paid.  Every status
change goes through ``validate_transition`` before being persisted.

State machine overview::

    deposit_paid --> selections_pending --> selections_complete --> scheduled
        --> in_progress --> completed --> closed

    deposit_paid / selections_pending / selections_complete --> scheduled
    selections_complete --> selections_pending   (contractor reopens the portal)
    (working states) <--> on_hold
    (any non-terminal state) --> canceled

Guards enforce which actor may trigger a transition: the customer can only
complete their selections; scheduling and work progress belong to the
contractor.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from quoteflow.core.errors import WrongState
from quoteflow.models.job import Job, JobStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Actor types for guard enforcement
# ---------------------------------------------------------------------------

class ActorType(str, enum.Enum):
    CUSTOMER = "customer"
    CONTRACTOR = "contractor"
    SYSTEM = "system"


# ---------------------------------------------------------------------------
# Transition guard result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition validation attempt."""
    allowed: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Transition definitions
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.DEPOSIT_PAID: {
        JobStatus.SELECTIONS_PENDING,
        JobStatus.SELECTIONS_COMPLETE,
        JobStatus.SCHEDULED,
        JobStatus.ON_HOLD,
        JobStatus.CANCELED,
    },
    JobStatus.SELECTIONS_PENDING: {
        JobStatus.SELECTIONS_COMPLETE,
        JobStatus.SCHEDULED,
        JobStatus.ON_HOLD,
        JobStatus.CANCELED,
    },
    JobStatus.SELECTIONS_COMPLETE: {
        JobStatus.SELECTIONS_PENDING,
        JobStatus.SCHEDULED,
        JobStatus.ON_HOLD,
        JobStatus.CANCELED,
    },
    JobStatus.SCHEDULED: {
        JobStatus.IN_PROGRESS,
        JobStatus.ON_HOLD,
        JobStatus.CANCELED,
    },
    JobStatus.IN_PROGRESS: {
        JobStatus.COMPLETED,
        JobStatus.ON_HOLD,
        JobStatus.CANCELED,
    },
    JobStatus.ON_HOLD: {
        JobStatus.SCHEDULED,
        JobStatus.IN_PROGRESS,
        JobStatus.CANCELED,
    },
    JobStatus.COMPLETED: {JobStatus.CLOSED},
    JobStatus.CLOSED: set(),
    JobStatus.CANCELED: set(),
}

# Transitions a customer may trigger from the portal
_CUSTOMER_TARGETS: frozenset[JobStatus] = frozenset({JobStatus.SELECTIONS_COMPLETE})


# ---------------------------------------------------------------------------
# Guard functions
# ---------------------------------------------------------------------------

def _guard_actor(new_status: JobStatus, actor_type: ActorType) -> TransitionResult:
    if actor_type == ActorType.CUSTOMER and new_status not in _CUSTOMER_TARGETS:
        return TransitionResult(
            allowed=False,
            reason=f"Customers cannot move a job to '{new_status.value}'.",
        )
    return TransitionResult(allowed=True)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_transition(
    current_status: JobStatus,
    new_status: JobStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> TransitionResult:
    """Validate whether a job status transition is allowed.

    Checks two layers:
    1. Is the transition structurally valid per the state machine?
    2. Does the actor have permission for this specific transition?
    """
    allowed_targets = VALID_TRANSITIONS.get(current_status, set())
    if new_status not in allowed_targets:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Invalid transition: '{current_status.value}' -> '{new_status.value}'. "
                f"Allowed transitions from '{current_status.value}': "
                f"{', '.join(s.value for s in sorted(allowed_targets, key=lambda s: s.value)) or 'none'}."
            ),
        )
    return _guard_actor(new_status, actor_type)


def get_valid_transitions(
    current_status: JobStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> list[JobStatus]:
    """Return the statuses the given actor can move a job to."""
    candidates = VALID_TRANSITIONS.get(current_status, set())
    valid = [
        target
        for target in candidates
        if validate_transition(current_status, target, actor_type).allowed
    ]
    return sorted(valid, key=lambda s: s.value)


def transition_job(
    job: Job,
    new_status: JobStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> None:
    """Validate and apply a status change; raise ``WrongState`` if illegal."""
    result = validate_transition(job.status, new_status, actor_type)
    if not result.allowed:
        raise WrongState(result.reason or "Invalid job transition")
    logger.info(
        "Job %s: %s -> %s (actor=%s)",
        job.job_number,
        job.status.value,
        new_status.value,
        actor_type.value,
    )
    job.status = new_status
