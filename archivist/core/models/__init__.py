from .reliability_models import (
    BuildStatus,
    FailureReason,
    IncidentReport,
    IncidentSeverity,
    TicketSeverity,
    TicketStatus,
)

__all__ = [
    "BuildStatus",
    "FailureReason",
    "IncidentReport",
    "IncidentSeverity",
    "TicketSeverity",
    "TicketStatus",
]
