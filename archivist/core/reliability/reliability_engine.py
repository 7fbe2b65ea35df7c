"""
Reliability Engine - lifecycle of operational incidents.

Any pipeline stage reports a fault with ``report``; the engine then tries to
repair it (``attempt_recovery``) and, when automated repair keeps failing,
hands it to humans (``escalate``).

Incident state machine:
    OPEN --report--> OPEN
    OPEN --attempt_recovery (resolved)--> RESOLVED (auto_resolved=True)
    OPEN --attempt_recovery (not resolved or raised)--> OPEN, repair_attempts + 1
    OPEN --escalate--> OPEN, ticket attached
    RESOLVED is terminal; nothing here mutates a resolved incident.

Failures of a repair strategy itself propagate to the caller and are not
reported as new incidents; repeated failure shows up in ``repair_attempts``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from archivist.config import settings
from archivist.core.database.models import Incident, Ticket
from archivist.core.models import IncidentReport
from archivist.core.shared.database_service import database_service

from .escalation_policy import EscalationDecision, EscalationPolicy, escalation_policy
from .repair_strategies import RepairStrategyRegistry, default_registry
from .ticket_service import TicketService, ticket_service

logger = logging.getLogger("archivist.reliability.engine")

IncidentRef = Union[Incident, UUID, str]


@dataclass
class RecoveryResult:
    incident_id: str
    resolved: bool
    applicable: bool
    repair_attempts: int
    changes: Dict[str, Any] = field(default_factory=dict)
    message: str = ""


class IncidentNotFoundError(LookupError):
    def __init__(self, incident_id):
        super().__init__(f"Incident not found: {incident_id}")
        self.incident_id = incident_id


def _incident_id(ref: IncidentRef) -> UUID:
    if isinstance(ref, Incident):
        return ref.id
    if isinstance(ref, str):
        return UUID(ref)
    return ref


class ReliabilityEngine:
    """
    Incident reporting, repair and escalation.

    Args:
        session_factory: Async context manager yielding a session
        registry: Repair strategies by source type
        policy: Escalation policy shared with archive builds
        tickets: Ticketing adapter
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]] = None,
        registry: Optional[RepairStrategyRegistry] = None,
        policy: Optional[EscalationPolicy] = None,
        tickets: Optional[TicketService] = None,
    ):
        self._session_factory = session_factory or database_service.get_session
        self.registry = registry or default_registry()
        self.policy = policy or escalation_policy
        self.tickets = tickets or ticket_service

    async def _lock_incident(self, session: AsyncSession, incident_id: UUID) -> Incident:
        incident = (
            await session.execute(
                select(Incident)
                .where(Incident.id == incident_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if incident is None:
            raise IncidentNotFoundError(incident_id)
        return incident

    # =========================================================================
    # REPORT
    # =========================================================================

    async def report(self, payload: Union[IncidentReport, Dict[str, Any]]) -> Incident:
        """
        Record a new open incident. No recovery is attempted here.

        Raises:
            pydantic.ValidationError: Missing or invalid fields
        """
        report = payload if isinstance(payload, IncidentReport) else IncidentReport.model_validate(payload)

        async with self._session_factory() as session:
            incident = Incident(
                source_type=report.source_type,
                source_id=report.source_id,
                tenant_id=report.tenant_id,
                severity=report.severity.value,
                title=report.title,
                message=report.message,
                retryable=report.retryable,
                detected_at=datetime.utcnow(),
                auto_resolved=False,
                metadata_={**report.metadata, "repair_attempts": 0},
            )
            session.add(incident)
            await session.flush()

        logger.info(
            f"Incident {incident.id} reported: {report.severity.value} "
            f"{report.source_type}:{report.source_id} - {report.title}"
        )
        return incident

    # =========================================================================
    # RECOVERY
    # =========================================================================

    @staticmethod
    def _count_repair_attempt(row: Incident, resolved: bool = False, error: Optional[Exception] = None) -> int:
        metadata = dict(row.metadata_ or {})
        metadata["repair_attempts"] = int(metadata.get("repair_attempts", 0)) + 1
        metadata["last_repair_at"] = datetime.utcnow().isoformat()
        if error is not None:
            metadata["last_repair_error"] = f"{type(error).__name__}: {error}"
        if resolved:
            metadata["auto_recovered"] = True
            row.resolved_at = datetime.utcnow()
            row.auto_resolved = True
        row.metadata_ = metadata
        flag_modified(row, "metadata_")
        return metadata["repair_attempts"]

    async def _record_failed_repair(self, incident_id: UUID, error: Exception) -> int:
        # The strategy's session was rolled back; count the attempt on its own.
        async with self._session_factory() as session:
            row = await self._lock_incident(session, incident_id)
            attempts = self._count_repair_attempt(row, error=error)
            await session.flush()
        return attempts

    async def attempt_recovery(self, incident: IncidentRef) -> RecoveryResult:
        """
        Run the repair strategy for the incident's source type.

        ``repair_attempts`` is incremented on every call against an open
        incident, whatever the outcome, including when the strategy raises.
        A resolved incident is returned untouched with ``resolved=False``.

        Raises:
            IncidentNotFoundError: No such incident
            Exception: Infrastructure errors raised by the strategy
        """
        incident_id = _incident_id(incident)
        strategy_error: Optional[Exception] = None

        try:
            async with self._session_factory() as session:
                row = await self._lock_incident(session, incident_id)

                if row.is_resolved:
                    return RecoveryResult(
                        incident_id=str(row.id),
                        resolved=False,
                        applicable=False,
                        repair_attempts=row.repair_attempts,
                        message="incident already resolved",
                    )

                strategy = self.registry.get(row.source_type)
                if strategy is None:
                    outcome_resolved, applicable, changes = False, False, {}
                    message = f"no repair strategy for source type '{row.source_type}'"
                else:
                    try:
                        outcome = await strategy.attempt(session, row)
                    except Exception as e:
                        strategy_error = e
                        raise
                    outcome_resolved, applicable = outcome.resolved, outcome.applicable
                    changes, message = outcome.changes, outcome.message

                attempts = self._count_repair_attempt(row, resolved=outcome_resolved)
                await session.flush()
        except Exception:
            if strategy_error is None:
                raise
            attempts = await self._record_failed_repair(incident_id, strategy_error)
            logger.error(f"Repair attempt {attempts} for incident {incident_id} failed: {strategy_error}")
            raise strategy_error

        if outcome_resolved:
            logger.info(f"Incident {incident_id} auto-resolved after {attempts} repair attempt(s): {message}")
        else:
            logger.info(f"Incident {incident_id} still open after repair attempt {attempts}: {message}")

        return RecoveryResult(
            incident_id=str(incident_id),
            resolved=outcome_resolved,
            applicable=applicable,
            repair_attempts=attempts,
            changes=changes,
            message=message,
        )

    async def resolve(self, incident: IncidentRef, auto_resolved: bool = False) -> Incident:
        """Mark an incident resolved (operator action). No-op if already resolved."""
        async with self._session_factory() as session:
            row = await self._lock_incident(session, _incident_id(incident))
            if row.is_open:
                row.resolved_at = datetime.utcnow()
                row.auto_resolved = auto_resolved
                await session.flush()
                logger.info(f"Incident {row.id} resolved (auto={auto_resolved})")
            return row

    # =========================================================================
    # ESCALATION
    # =========================================================================

    def decide(self, incident: Incident) -> EscalationDecision:
        """Escalation decision for callers; ``trigger_agent`` is advisory for incidents."""
        return self.policy.decide_for_incident(incident)

    def should_create_ticket(self, incident: Incident) -> bool:
        return self.policy.should_create_ticket(incident)

    async def escalate(self, incident: IncidentRef) -> Optional[Ticket]:
        """
        Open a ticket for the incident when the escalation policy asks for one.

        Returns:
            The new Ticket, or None (no ticket needed, already ticketed, or resolved)
        """
        async with self._session_factory() as session:
            row = await self._lock_incident(session, _incident_id(incident))

            decision = self.policy.decide_for_incident(row)
            if not decision.open_ticket:
                return None

            ticket = await self.tickets.create(
                session,
                self.policy.ticket_severity_for_incident(row),
                {
                    "source_type": row.source_type,
                    "source_id": row.source_id,
                    "tenant_id": str(row.tenant_id),
                    "incident_id": str(row.id),
                    "title": row.title,
                    "message": row.message,
                    "severity": row.severity,
                    "retryable": row.retryable,
                    "repair_attempts": row.repair_attempts,
                    "context": dict(row.metadata_ or {}),
                },
                subject=row.title,
                tenant_id=row.tenant_id,
            )
            row.escalation_ticket_id = ticket.id
            await session.flush()

        logger.warning(f"Incident {row.id} escalated to {ticket.severity} ticket {ticket.id}")
        return ticket

    # =========================================================================
    # SWEEP
    # =========================================================================

    async def list_open_incidents(self, limit: Optional[int] = None) -> List[Incident]:
        async with self._session_factory() as session:
            query = (
                select(Incident)
                .where(Incident.resolved_at.is_(None))
                .order_by(Incident.detected_at)
                .limit(limit or settings.reliability_recovery_batch)
            )
            return list((await session.execute(query)).scalars().all())

    async def auto_recover(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Try to repair every open incident (oldest first), escalating those
        that stay open. One incident's infrastructure error does not stop
        the sweep, and an incident whose repair raised is still escalated.
        ``errors`` counts incidents, not individual failures.
        """
        summary = {"scanned": 0, "resolved": 0, "escalated": 0, "errors": 0}

        for incident in await self.list_open_incidents(limit):
            summary["scanned"] += 1
            failed = False
            try:
                result = await self.attempt_recovery(incident.id)
            except Exception as e:
                failed = True
                logger.error(f"Auto-recovery failed for incident {incident.id}: {e}")
            else:
                if result.resolved:
                    summary["resolved"] += 1
                    continue

            try:
                if await self.escalate(incident.id) is not None:
                    summary["escalated"] += 1
            except Exception as e:
                failed = True
                logger.error(f"Escalation failed for incident {incident.id}: {e}")

            if failed:
                summary["errors"] += 1

        logger.info(
            f"Auto-recovery sweep: scanned={summary['scanned']} resolved={summary['resolved']} "
            f"escalated={summary['escalated']} errors={summary['errors']}"
        )
        return summary


reliability_engine = ReliabilityEngine()
