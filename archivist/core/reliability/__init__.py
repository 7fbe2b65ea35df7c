"""
Reliability: incident lifecycle, repair strategies, escalation and metrics.
"""

from .escalation_policy import (
    EscalationAction,
    EscalationDecision,
    EscalationPolicy,
    escalation_policy,
)
from .ticket_service import TicketService, ticket_service

__all__ = [
    "EscalationAction",
    "EscalationDecision",
    "EscalationPolicy",
    "escalation_policy",
    "TicketService",
    "ticket_service",
]
