# archivist/core/database/models.py
"""
SQLAlchemy ORM models for Archivist.

Models:
    - BuildJob: One request to assemble a downloadable archive, with chunk
      progress, fault history and escalation link
    - Incident: An operational fault reported by any pipeline stage
    - Ticket: Human-facing support ticket (ticketing system record)
    - AgentRun: Output of one automated diagnostic pass
    - PipelineAsset: Processing state of an asset, read by repair strategies

All models use UUID primary keys and include timestamps for auditing.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from archivist.config import settings
from archivist.core.models import BuildStatus, TicketStatus

from .base import Base


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            return uuid.UUID(value)
        return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class BuildJob(Base):
    """
    Archive build job.

    Tracks one download request's archive from NONE through BUILDING to READY
    or FAILED. Progress is checkpointed per chunk so that a retried attempt
    resumes at ``chunk_index + 1``.

    Attributes:
        id: Unique build identifier
        request_id: Owning download request id (external)
        tenant_id: Owning tenant (external)
        status: none | building | ready | failed
        objects: Ordered list of {"key", "filename"} dicts captured at request time
        total_objects: Number of objects in ``objects``
        chunk_index: Last fully committed chunk (-1 if none)
        archive_path: Durable storage key of the finished archive (READY only)
        archive_size_bytes: Size of the finished archive
        failure_count: Number of failed attempts (never reset automatically)
        failure_reason: Classified reason of the latest failure
        last_failed_at: When the latest failure was recorded
        escalation_ticket_id: Support ticket opened for this build, if any

    Invariants:
        - archive_path is set iff status == ready
        - failure_reason / last_failed_at are set iff failure_count >= 1
        - escalation_ticket_id is never overwritten once set
    """

    __tablename__ = "build_jobs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    request_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(UUID(), nullable=False, index=True)

    status = Column(String(20), nullable=False, default=BuildStatus.NONE.value, index=True)

    # Object list and chunk progress
    objects = Column(JSON, nullable=False, default=list)
    total_objects = Column(Integer, nullable=False, default=0)
    chunk_index = Column(Integer, nullable=False, default=-1)

    # Outcome
    archive_path = Column(String(1024), nullable=True)
    archive_size_bytes = Column(BigInteger, nullable=True)

    # Fault history
    failure_count = Column(Integer, nullable=False, default=0)
    failure_reason = Column(String(32), nullable=True)
    last_failed_at = Column(DateTime, nullable=True)

    # Escalation
    escalation_ticket_id = Column(
        UUID(), ForeignKey("tickets.id", ondelete="SET NULL"), nullable=True
    )

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_build_jobs_tenant_status", "tenant_id", "status"),
    )

    @property
    def can_regenerate(self) -> bool:
        """Regeneration is allowed until the third failure or the first ticket."""
        return (
            (self.failure_count or 0) < settings.escalation_ticket_threshold
            and self.escalation_ticket_id is None
        )

    @property
    def is_escalated(self) -> bool:
        return (self.failure_count or 0) >= settings.escalation_ticket_threshold

    @property
    def is_ready(self) -> bool:
        return self.status == BuildStatus.READY.value

    def to_dict(self) -> Dict[str, Any]:
        """Operator-facing read model."""
        return {
            "id": str(self.id),
            "request_id": self.request_id,
            "tenant_id": str(self.tenant_id),
            "status": self.status,
            "chunk_index": self.chunk_index,
            "total_objects": self.total_objects,
            "archive_path": self.archive_path,
            "archive_size_bytes": self.archive_size_bytes,
            "failure_count": self.failure_count,
            "failure_reason": self.failure_reason,
            "last_failed_at": _iso(self.last_failed_at),
            "escalation_ticket_id": str(self.escalation_ticket_id) if self.escalation_ticket_id else None,
            "can_regenerate": self.can_regenerate,
            "is_escalated": self.is_escalated,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self) -> str:
        return f"<BuildJob(id={self.id}, status={self.status}, chunk_index={self.chunk_index})>"


class Incident(Base):
    """
    Operational incident raised by a pipeline stage.

    An incident is open while ``resolved_at`` is null. Recovery attempts are
    counted in ``metadata["repair_attempts"]``; escalation attaches a ticket
    without changing the open/resolved state. Resolved incidents are frozen.
    """

    __tablename__ = "incidents"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    source_type = Column(String(64), nullable=False, index=True)
    source_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(UUID(), nullable=False, index=True)

    # Classification
    severity = Column(String(16), nullable=False, default="warning")
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    retryable = Column(Boolean, nullable=False, default=True)

    # Timing and resolution
    detected_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    resolved_at = Column(DateTime, nullable=True, index=True)
    auto_resolved = Column(Boolean, nullable=False, default=False)

    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    escalation_ticket_id = Column(
        UUID(), ForeignKey("tickets.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        Index("ix_incidents_source", "source_type", "source_id"),
    )

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @property
    def repair_attempts(self) -> int:
        return int((self.metadata_ or {}).get("repair_attempts", 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "source_type": self.source_type,
            "source_id": self.source_id,
            "tenant_id": str(self.tenant_id),
            "severity": self.severity,
            "title": self.title,
            "message": self.message,
            "retryable": self.retryable,
            "detected_at": _iso(self.detected_at),
            "resolved_at": _iso(self.resolved_at),
            "auto_resolved": self.auto_resolved,
            "metadata": dict(self.metadata_ or {}),
            "escalation_ticket_id": str(self.escalation_ticket_id) if self.escalation_ticket_id else None,
            "is_open": self.is_open,
            "is_resolved": self.is_resolved,
        }

    def __repr__(self) -> str:
        return f"<Incident(id={self.id}, source={self.source_type}:{self.source_id}, open={self.is_open})>"


class Ticket(Base):
    """
    Support ticket.

    Owned by the ticketing system; archive builds and incidents only hold a
    reference to it. Status changes after creation (assignment, closing) are
    made by operators, never by automated paths.
    """

    __tablename__ = "tickets"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    severity = Column(String(8), nullable=False)
    status = Column(String(20), nullable=False, default=TicketStatus.OPEN.value, index=True)
    tenant_id = Column(UUID(), nullable=True, index=True)
    subject = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    @property
    def is_closed(self) -> bool:
        return self.status == TicketStatus.CLOSED.value

    def __repr__(self) -> str:
        return f"<Ticket(id={self.id}, severity={self.severity}, status={self.status})>"


class AgentRun(Base):
    """Diagnostic agent execution with its structured findings."""

    __tablename__ = "agent_runs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    agent_id = Column(String(64), nullable=False, index=True)
    subject_type = Column(String(64), nullable=False)
    subject_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(UUID(), nullable=True)

    failure_reason = Column(String(32), nullable=True)
    severity = Column(String(16), nullable=False)
    summary = Column(Text, nullable=False)
    recommendations = Column(JSON, nullable=False, default=list)
    context = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<AgentRun(id={self.id}, agent={self.agent_id}, subject={self.subject_id})>"


class PipelineAsset(Base):
    """
    Processing state of an uploaded asset.

    Repair strategies read the downstream completion signals recorded here
    (thumbnails, extracted metadata, pipeline completion timestamp) to decide
    whether an asset reported as stuck can be moved forward.

    Analysis status progression:
        uploading -> generating_thumbnails -> extracting_metadata -> finalizing -> complete
    """

    __tablename__ = "pipeline_assets"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)
    title = Column(String(255), nullable=True)

    analysis_status = Column(String(32), nullable=False, default="uploading", index=True)
    thumbnail_status = Column(String(32), nullable=False, default="pending")
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def completion_signals(self) -> Dict[str, bool]:
        meta = self.metadata_ or {}
        return {
            "thumbnails": self.thumbnail_status == "completed" or bool(meta.get("thumbnails_generated")),
            "metadata": bool(meta.get("metadata_extracted")),
            "pipeline": bool(meta.get("pipeline_completed_at")),
        }

    def __repr__(self) -> str:
        return f"<PipelineAsset(id={self.id}, analysis_status={self.analysis_status})>"


__all__ = [
    "UUID",
    "BuildJob",
    "Incident",
    "Ticket",
    "AgentRun",
    "PipelineAsset",
]
