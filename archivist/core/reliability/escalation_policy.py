"""
Escalation Policy - decides what happens after a fault.

One decision contract is shared by archive builds and generic incidents:

    decide(...) -> EscalationDecision(trigger_agent, open_ticket)

For builds (rules in order):
    1. reason == TIMEOUT            -> trigger agent
    2. elif failure_count >= 2      -> trigger agent
    3. else                         -> nothing
    4. independently, failure_count >= 3 and no ticket yet -> open ticket

Rule 4 can fire in the same decision as rule 1 or 2. A decision never asks
for a ticket once one is attached to the subject.

Incidents carry no failure taxonomy, so the reason is derived from severity
and retryability, and ``repair_attempts`` plays the part of the failure count.
For incidents the agent half of the decision is advisory; only the ticket
half is acted on by the reliability engine.

Everything here is pure: no database access, no network, no clock.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from archivist.config import settings
from archivist.core.models import FailureReason, IncidentSeverity, TicketSeverity


class EscalationAction(str, Enum):
    NONE = "none"
    TRIGGER_AGENT = "trigger_agent"
    OPEN_TICKET = "open_ticket"


@dataclass(frozen=True)
class EscalationDecision:
    trigger_agent: bool = False
    open_ticket: bool = False

    @property
    def actions(self) -> List[EscalationAction]:
        actions = []
        if self.trigger_agent:
            actions.append(EscalationAction.TRIGGER_AGENT)
        if self.open_ticket:
            actions.append(EscalationAction.OPEN_TICKET)
        return actions or [EscalationAction.NONE]

    @property
    def action(self) -> EscalationAction:
        """The most severe action; OPEN_TICKET outranks TRIGGER_AGENT."""
        return self.actions[-1]

    @property
    def is_none(self) -> bool:
        return not (self.trigger_agent or self.open_ticket)


class EscalationPolicy:
    """
    Threshold-based escalation rules.

    Args:
        agent_threshold: Failure count from which the agent always runs
        ticket_threshold: Failure count / repair attempts from which a ticket opens
    """

    def __init__(self, agent_threshold: Optional[int] = None, ticket_threshold: Optional[int] = None):
        self.agent_threshold = agent_threshold or settings.escalation_agent_threshold
        self.ticket_threshold = ticket_threshold or settings.escalation_ticket_threshold

    def decide(
        self,
        reason: Optional[FailureReason],
        failure_count: int,
        has_ticket: bool,
    ) -> EscalationDecision:
        if reason == FailureReason.TIMEOUT:
            trigger_agent = True
        else:
            trigger_agent = failure_count >= self.agent_threshold

        open_ticket = failure_count >= self.ticket_threshold and not has_ticket
        return EscalationDecision(trigger_agent=trigger_agent, open_ticket=open_ticket)

    def decide_for_build(self, job) -> EscalationDecision:
        reason = FailureReason(job.failure_reason) if job.failure_reason else None
        return self.decide(
            reason,
            job.failure_count or 0,
            job.escalation_ticket_id is not None,
        )

    def decide_for_incident(self, incident) -> EscalationDecision:
        """
        Decide for a generic incident.

        Serious retryable faults get an automated diagnostic pass first, as a
        timeout does for builds. Tickets open on the three-strikes rule, or
        straight away for critical faults and for errors that retrying cannot
        fix. Resolved incidents never escalate.

        Incidents have no diagnostic agent of their own: ``trigger_agent`` is
        advisory here, surfaced through ``ReliabilityEngine.decide`` for the
        reporting stage to act on. The engine itself only acts on
        ``open_ticket``.
        """
        if incident.resolved_at is not None:
            return EscalationDecision()

        severity = IncidentSeverity(incident.severity)
        attempts = incident.repair_attempts
        serious = severity in (IncidentSeverity.ERROR, IncidentSeverity.CRITICAL)

        trigger_agent = (serious and incident.retryable) or attempts >= self.agent_threshold

        open_ticket = incident.escalation_ticket_id is None and (
            attempts >= self.ticket_threshold
            or severity == IncidentSeverity.CRITICAL
            or (severity == IncidentSeverity.ERROR and not incident.retryable)
        )
        return EscalationDecision(trigger_agent=trigger_agent, open_ticket=open_ticket)

    def should_create_ticket(self, incident) -> bool:
        """Three strikes: true once repair_attempts reaches the ticket threshold."""
        return (
            incident.escalation_ticket_id is None
            and incident.repair_attempts >= self.ticket_threshold
        )

    @staticmethod
    def ticket_severity_for_incident(incident) -> TicketSeverity:
        if incident.severity == IncidentSeverity.CRITICAL.value:
            return TicketSeverity.P0
        if incident.severity == IncidentSeverity.ERROR.value:
            return TicketSeverity.P1
        return TicketSeverity.P2


# Global policy instance
escalation_policy = EscalationPolicy()
