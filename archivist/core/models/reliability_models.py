# archivist/core/models/reliability_models.py
"""
Reliability Models - shared vocabulary for archive builds and incidents.

Defines the enumerations persisted on BuildJob, Incident and Ticket rows and
the validated payload accepted by ReliabilityEngine.report():
- BuildStatus: archive build lifecycle (none -> building -> ready | failed)
- FailureReason: taxonomy produced by the failure classifier
- IncidentSeverity: info / warning / error / critical
- TicketSeverity / TicketStatus: the ticketing system's vocabulary
- IncidentReport: required fields for a new incident
"""

from enum import Enum
from typing import Any, Dict
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class BuildStatus(str, Enum):
    """Archive build status. READY and FAILED end an attempt; FAILED can be re-entered."""
    NONE = "none"
    BUILDING = "building"
    READY = "ready"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Classified cause of a failed build attempt."""
    TIMEOUT = "timeout"
    DISK_FULL = "disk_full"
    S3_READ_ERROR = "s3_read_error"
    PERMISSION_ERROR = "permission_error"
    UNKNOWN = "unknown"


class IncidentSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class TicketSeverity(str, Enum):
    """Support ticket priority. P0 pages someone, P2 waits for business hours."""
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    CLOSED = "closed"


class IncidentReport(BaseModel):
    """
    Payload for reporting a new incident.

    Attributes:
        source_type: Pipeline stage tag used to select a repair strategy
        source_id: Identifier of the faulted resource within that stage
        tenant_id: Owning tenant
        severity: Incident severity
        title: Short human-readable title
        message: Human-readable detail
        retryable: Whether the failed operation can be retried safely
        metadata: Free-form diagnostic context
    """
    source_type: str = Field(..., min_length=1, max_length=64)
    source_id: str = Field(..., min_length=1, max_length=64)
    tenant_id: UUID
    severity: IncidentSeverity
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    retryable: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("source_id", mode="before")
    @classmethod
    def _coerce_source_id(cls, value: Any) -> Any:
        # Callers commonly pass UUID objects for the faulted resource
        if isinstance(value, UUID):
            return str(value)
        return value
