"""
Unit tests for the escalation policy. No database: the policy only reads
attributes, so in-memory model instances are enough.
"""

import uuid

import pytest

from archivist.core.database.models import BuildJob, Incident
from archivist.core.models import FailureReason, TicketSeverity
from archivist.core.reliability.escalation_policy import (
    EscalationAction,
    EscalationDecision,
    EscalationPolicy,
)


@pytest.fixture
def policy():
    return EscalationPolicy(agent_threshold=2, ticket_threshold=3)


def _build(failure_count=0, reason=None, ticket=None) -> BuildJob:
    return BuildJob(
        tenant_id=uuid.uuid4(),
        request_id="req",
        objects=[],
        failure_count=failure_count,
        failure_reason=reason.value if reason else None,
        escalation_ticket_id=ticket,
    )


def _incident(severity="warning", retryable=True, attempts=0, ticket=None, resolved=False) -> Incident:
    from datetime import datetime

    return Incident(
        source_type="asset",
        source_id=str(uuid.uuid4()),
        tenant_id=uuid.uuid4(),
        severity=severity,
        title="Asset stuck in uploading state",
        message="test",
        retryable=retryable,
        metadata_={"repair_attempts": attempts},
        escalation_ticket_id=ticket,
        resolved_at=datetime.utcnow() if resolved else None,
    )


class TestBuildDecisions:

    def test_timeout_triggers_agent_on_first_failure(self, policy):
        decision = policy.decide(FailureReason.TIMEOUT, 1, has_ticket=False)
        assert decision == EscalationDecision(trigger_agent=True, open_ticket=False)

    def test_single_non_timeout_failure_does_nothing(self, policy):
        decision = policy.decide(FailureReason.S3_READ_ERROR, 1, has_ticket=False)
        assert decision.is_none
        assert decision.actions == [EscalationAction.NONE]

    def test_second_failure_triggers_agent(self, policy):
        decision = policy.decide(FailureReason.UNKNOWN, 2, has_ticket=False)
        assert decision.trigger_agent
        assert not decision.open_ticket

    def test_third_failure_triggers_agent_and_ticket(self, policy):
        decision = policy.decide(FailureReason.DISK_FULL, 3, has_ticket=False)
        assert decision.actions == [EscalationAction.TRIGGER_AGENT, EscalationAction.OPEN_TICKET]
        assert decision.action == EscalationAction.OPEN_TICKET

    @pytest.mark.parametrize("count", [3, 4, 10])
    def test_never_opens_second_ticket(self, policy, count):
        decision = policy.decide(FailureReason.TIMEOUT, count, has_ticket=True)
        assert decision.trigger_agent
        assert not decision.open_ticket

    def test_decide_for_build_reads_job(self, policy):
        assert policy.decide_for_build(_build(1, FailureReason.TIMEOUT)).trigger_agent
        assert policy.decide_for_build(_build(3, FailureReason.UNKNOWN)).open_ticket
        assert not policy.decide_for_build(_build(3, FailureReason.UNKNOWN, ticket=uuid.uuid4())).open_ticket

    def test_decision_is_pure(self, policy):
        job = _build(2, FailureReason.PERMISSION_ERROR)
        first = policy.decide_for_build(job)
        second = policy.decide_for_build(job)
        assert first == second
        assert job.failure_count == 2


class TestCanRegenerate:

    def test_boundary(self):
        assert _build(2).can_regenerate is True
        assert _build(3).can_regenerate is False

    def test_ticket_blocks_regeneration(self):
        assert _build(0, ticket=uuid.uuid4()).can_regenerate is False

    def test_is_escalated(self):
        assert _build(2).is_escalated is False
        assert _build(3).is_escalated is True


class TestIncidentDecisions:

    def test_three_strikes(self, policy):
        assert policy.should_create_ticket(_incident(attempts=3)) is True
        assert policy.should_create_ticket(_incident(attempts=2)) is False
        assert policy.should_create_ticket(_incident(attempts=5, ticket=uuid.uuid4())) is False

    def test_three_strikes_opens_ticket_for_warning(self, policy):
        decision = policy.decide_for_incident(_incident(severity="warning", attempts=3))
        assert decision.open_ticket
        assert decision.trigger_agent

    def test_fresh_warning_does_nothing(self, policy):
        assert policy.decide_for_incident(_incident(severity="warning")).is_none

    def test_critical_opens_ticket_immediately(self, policy):
        decision = policy.decide_for_incident(_incident(severity="critical"))
        assert decision.open_ticket

    def test_non_retryable_error_opens_ticket(self, policy):
        assert policy.decide_for_incident(_incident(severity="error", retryable=False)).open_ticket
        retryable = policy.decide_for_incident(_incident(severity="error", retryable=True))
        assert retryable.trigger_agent
        assert not retryable.open_ticket

    def test_resolved_incident_never_escalates(self, policy):
        assert policy.decide_for_incident(_incident(severity="critical", resolved=True)).is_none

    def test_existing_ticket_blocks_ticket(self, policy):
        decision = policy.decide_for_incident(_incident(severity="critical", ticket=uuid.uuid4()))
        assert not decision.open_ticket

    @pytest.mark.parametrize("severity,expected", [
        ("critical", TicketSeverity.P0),
        ("error", TicketSeverity.P1),
        ("warning", TicketSeverity.P2),
        ("info", TicketSeverity.P2),
    ])
    def test_ticket_severity(self, severity, expected):
        assert EscalationPolicy.ticket_severity_for_incident(_incident(severity=severity)) == expected
