"""
Reliability metrics for the operations dashboard.

Every call recomputes the rollups from persisted state; nothing is cached.
The result has four stable top-level keys, each holding named fields:

    integrity          rate_percent, eligible, invalid, incidents_count, slo_target_percent
    mttr               mttr_minutes_avg, resolved_count, resolved_count_24h, window_hours
    recovery_success   recovery_rate_percent, auto_resolved_count, resolved_count
    ticket_escalation  unresolved_count, escalated_count_24h, window_hours

Monitored resources are archive builds and pipeline assets. A resource counts
against integrity while it has an open incident, or (for builds) while its
last attempt failed.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Set, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from archivist.core.database.models import BuildJob, Incident, PipelineAsset, Ticket
from archivist.core.models import BuildStatus, TicketStatus
from archivist.core.shared.database_service import database_service

logger = logging.getLogger("archivist.reliability.metrics")

# Incident source types whose source_id is a pipeline asset id
ASSET_SOURCE_TYPES = ("asset", "job")
BUILD_SOURCE_TYPE = "archive_build"


def _percent(part: int, whole: int, empty: float) -> float:
    if not whole:
        return empty
    return round(part * 100.0 / whole, 1)


class ReliabilityMetricsService:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]] = None,
        window_hours: int = 24,
        slo_target_percent: float = 95.0,
    ):
        self._session_factory = session_factory or database_service.get_session
        self.window_hours = window_hours
        self.slo_target_percent = slo_target_percent

    async def get_all(self) -> Dict[str, Dict[str, Any]]:
        async with self._session_factory() as session:
            since = datetime.utcnow() - timedelta(hours=self.window_hours)
            return {
                "integrity": await self.integrity(session),
                "mttr": await self.mttr(session, since),
                "recovery_success": await self.recovery_success(session),
                "ticket_escalation": await self.ticket_escalation(session, since),
            }

    async def integrity(self, session: AsyncSession) -> Dict[str, Any]:
        builds = (await session.execute(select(BuildJob.id, BuildJob.status))).all()
        asset_ids = {str(row[0]) for row in (await session.execute(select(PipelineAsset.id))).all()}

        open_incidents = (
            await session.execute(
                select(Incident.source_type, Incident.source_id).where(Incident.resolved_at.is_(None))
            )
        ).all()
        faulted: Set[Tuple[str, str]] = set()
        for source_type, source_id in open_incidents:
            kind = "asset" if source_type in ASSET_SOURCE_TYPES else source_type
            faulted.add((kind, source_id))

        invalid = 0
        for build_id, status in builds:
            if status == BuildStatus.FAILED.value or (BUILD_SOURCE_TYPE, str(build_id)) in faulted:
                invalid += 1
        invalid += sum(1 for asset_id in asset_ids if ("asset", asset_id) in faulted)

        eligible = len(builds) + len(asset_ids)
        return {
            "rate_percent": _percent(eligible - invalid, eligible, empty=100.0),
            "eligible": eligible,
            "invalid": invalid,
            "incidents_count": len(open_incidents),
            "slo_target_percent": self.slo_target_percent,
        }

    async def mttr(self, session: AsyncSession, since: datetime) -> Dict[str, Any]:
        rows = (
            await session.execute(
                select(Incident.detected_at, Incident.resolved_at).where(Incident.resolved_at.isnot(None))
            )
        ).all()
        durations = [(resolved - detected).total_seconds() / 60.0 for detected, resolved in rows]
        return {
            "mttr_minutes_avg": round(sum(durations) / len(durations), 2) if durations else None,
            "resolved_count": len(rows),
            "resolved_count_24h": sum(1 for _, resolved in rows if resolved >= since),
            "window_hours": self.window_hours,
        }

    async def recovery_success(self, session: AsyncSession) -> Dict[str, Any]:
        resolved = (
            await session.execute(select(func.count()).select_from(Incident).where(Incident.resolved_at.isnot(None)))
        ).scalar() or 0
        auto_resolved = (
            await session.execute(
                select(func.count())
                .select_from(Incident)
                .where(Incident.resolved_at.isnot(None), Incident.auto_resolved.is_(True))
            )
        ).scalar() or 0
        return {
            "recovery_rate_percent": _percent(auto_resolved, resolved, empty=0.0),
            "auto_resolved_count": auto_resolved,
            "resolved_count": resolved,
        }

    async def ticket_escalation(self, session: AsyncSession, since: datetime) -> Dict[str, Any]:
        not_closed = Ticket.status != TicketStatus.CLOSED.value

        unresolved_incidents = (
            await session.execute(
                select(func.count())
                .select_from(Incident)
                .join(Ticket, Ticket.id == Incident.escalation_ticket_id)
                .where(not_closed)
            )
        ).scalar() or 0
        unresolved_builds = (
            await session.execute(
                select(func.count())
                .select_from(BuildJob)
                .join(Ticket, Ticket.id == BuildJob.escalation_ticket_id)
                .where(not_closed)
            )
        ).scalar() or 0
        escalated_recent = (
            await session.execute(select(func.count()).select_from(Ticket).where(Ticket.created_at >= since))
        ).scalar() or 0

        return {
            "unresolved_count": unresolved_incidents + unresolved_builds,
            "unresolved_incidents": unresolved_incidents,
            "unresolved_builds": unresolved_builds,
            "escalated_count_24h": escalated_recent,
            "window_hours": self.window_hours,
        }


reliability_metrics_service = ReliabilityMetricsService()
