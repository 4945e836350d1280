"""
Unit tests for the Job State Manager.

Covers the transition table, the customer actor guard, and terminal states.
"""

import pytest

from quoteflow.core.errors import WrongState
from quoteflow.models.job import JobStatus
from quoteflow.services.jobStateManager import (
    ActorType,
    VALID_TRANSITIONS,
    get_valid_transitions,
    transition_job,
    validate_transition,
)


class TestJobTransitions:

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobStatus.DEPOSIT_PAID, JobStatus.SELECTIONS_PENDING),
            (JobStatus.DEPOSIT_PAID, JobStatus.SELECTIONS_COMPLETE),
            (JobStatus.SELECTIONS_COMPLETE, JobStatus.SCHEDULED),
            (JobStatus.SCHEDULED, JobStatus.IN_PROGRESS),
            (JobStatus.IN_PROGRESS, JobStatus.COMPLETED),
            (JobStatus.COMPLETED, JobStatus.CLOSED),
            (JobStatus.ON_HOLD, JobStatus.IN_PROGRESS),
        ],
    )
    def test_contractor_flow(self, current, target):
        assert validate_transition(current, target, ActorType.CONTRACTOR).allowed

    def test_cannot_skip_to_completed(self):
        result = validate_transition(JobStatus.DEPOSIT_PAID, JobStatus.COMPLETED)
        assert not result.allowed
        assert "deposit_paid" in result.reason

    @pytest.mark.parametrize("terminal", [JobStatus.CLOSED, JobStatus.CANCELED])
    def test_terminal_states(self, terminal):
        assert VALID_TRANSITIONS[terminal] == set()
        assert get_valid_transitions(terminal) == []

    def test_every_working_state_can_be_canceled(self):
        for status, targets in VALID_TRANSITIONS.items():
            if status in (JobStatus.COMPLETED, JobStatus.CLOSED, JobStatus.CANCELED):
                continue
            assert JobStatus.CANCELED in targets, status


class TestCustomerGuard:

    def test_customer_may_complete_selections(self):
        result = validate_transition(
            JobStatus.DEPOSIT_PAID, JobStatus.SELECTIONS_COMPLETE, ActorType.CUSTOMER
        )
        assert result.allowed

    def test_customer_may_not_schedule(self):
        result = validate_transition(
            JobStatus.SELECTIONS_COMPLETE, JobStatus.SCHEDULED, ActorType.CUSTOMER
        )
        assert not result.allowed
        assert "Customers" in result.reason

    def test_customer_targets(self):
        assert get_valid_transitions(JobStatus.SELECTIONS_PENDING, ActorType.CUSTOMER) == [
            JobStatus.SELECTIONS_COMPLETE
        ]

    def test_contractor_may_reopen_selections(self):
        result = validate_transition(
            JobStatus.SELECTIONS_COMPLETE, JobStatus.SELECTIONS_PENDING, ActorType.CONTRACTOR
        )
        assert result.allowed

    def test_customer_may_not_reopen_selections(self):
        result = validate_transition(
            JobStatus.SELECTIONS_COMPLETE, JobStatus.SELECTIONS_PENDING, ActorType.CUSTOMER
        )
        assert not result.allowed

    def test_contractor_targets_from_selections_complete(self):
        assert get_valid_transitions(JobStatus.SELECTIONS_COMPLETE, ActorType.CONTRACTOR) == [
            JobStatus.CANCELED,
            JobStatus.ON_HOLD,
            JobStatus.SCHEDULED,
            JobStatus.SELECTIONS_PENDING,
        ]


class TestTransitionJob:

    def test_applies_status(self, sample_job):
        transition_job(sample_job, JobStatus.SELECTIONS_COMPLETE, ActorType.CUSTOMER)
        assert sample_job.status == JobStatus.SELECTIONS_COMPLETE

    def test_illegal_transition_raises(self, sample_job):
        with pytest.raises(WrongState) as exc_info:
            transition_job(sample_job, JobStatus.IN_PROGRESS, ActorType.CUSTOMER)
        assert exc_info.value.status_code == 409
        assert sample_job.status == JobStatus.DEPOSIT_PAID
