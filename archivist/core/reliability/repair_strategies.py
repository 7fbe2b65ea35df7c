"""
Repair strategies for open incidents, keyed by incident source type.

Each strategy looks at the resource an incident is about and, when the
resource turns out to be fine (or can safely be moved forward), reports the
incident as resolved. A strategy that cannot help returns an outcome with
``resolved=False``; that is a normal result, not an error. Exceptions raised
here are infrastructure failures and propagate to the caller.

Registered strategies:
    asset          asset stuck mid-pipeline; advanced to "complete" once every
                   downstream completion signal is present
    job            pipeline job for an asset (source_id is the asset id); as
                   above, plus a retry dispatch when the incident is retryable
    archive_build  archive build; resolved once the build is READY, otherwise
                   re-queued while it may still regenerate
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from archivist.config import settings
from archivist.core.database.models import BuildJob, Incident, PipelineAsset

logger = logging.getLogger("archivist.reliability.repair")

ASSET_COMPLETE = "complete"


@dataclass
class RepairOutcome:
    resolved: bool
    applicable: bool = True
    changes: Dict[str, Any] = field(default_factory=dict)
    message: str = ""


class RepairStrategy(Protocol):
    source_type: str

    async def attempt(self, session: AsyncSession, incident: Incident) -> RepairOutcome:
        ...


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _send_asset_reprocess(asset_id: str) -> None:
    from archivist.celery_app import app as celery_app

    celery_app.send_task(settings.asset_reprocess_task, args=[asset_id])


class AssetPipelineRepair:
    """Moves an asset forward once thumbnails, metadata and pipeline completion are all recorded."""

    source_type = "asset"

    async def _load_asset(self, session: AsyncSession, incident: Incident) -> Optional[PipelineAsset]:
        asset_id = _parse_uuid(incident.source_id)
        if asset_id is None:
            return None
        return await session.get(PipelineAsset, asset_id)

    async def attempt(self, session: AsyncSession, incident: Incident) -> RepairOutcome:
        asset = await self._load_asset(session, incident)
        if asset is None:
            return RepairOutcome(resolved=False, applicable=False, message="asset not found")

        if asset.analysis_status == ASSET_COMPLETE:
            return RepairOutcome(resolved=True, message="asset already complete")

        signals = asset.completion_signals
        missing = [name for name, done in signals.items() if not done]
        if missing:
            return RepairOutcome(
                resolved=False,
                changes={"missing_signals": missing},
                message=f"asset still waiting on: {', '.join(missing)}",
            )

        previous = asset.analysis_status
        asset.analysis_status = ASSET_COMPLETE
        asset.updated_at = datetime.utcnow()
        await session.flush()

        logger.info(f"Advanced asset {asset.id} from {previous} to {ASSET_COMPLETE}")
        return RepairOutcome(
            resolved=True,
            changes={"analysis_status": [previous, ASSET_COMPLETE]},
            message="all completion signals present",
        )


class JobPipelineRepair(AssetPipelineRepair):
    """Asset repair for pipeline-job incidents, retrying the job when allowed."""

    source_type = "job"

    def __init__(self, dispatch_retry: Optional[Callable[[str], None]] = None):
        self.dispatch_retry = dispatch_retry or _send_asset_reprocess

    async def attempt(self, session: AsyncSession, incident: Incident) -> RepairOutcome:
        outcome = await super().attempt(session, incident)
        if outcome.resolved or not outcome.applicable or not incident.retryable:
            return outcome

        self.dispatch_retry(incident.source_id)
        metadata = dict(incident.metadata_ or {})
        metadata["retried"] = True
        metadata["retried_at"] = datetime.utcnow().isoformat()
        incident.metadata_ = metadata
        flag_modified(incident, "metadata_")

        outcome.changes["retry_dispatched"] = True
        logger.info(f"Dispatched pipeline retry for asset {incident.source_id} (incident {incident.id})")
        return outcome


class ArchiveBuildRepair:
    """Resolves archive-build incidents once the build is READY; re-queues it otherwise."""

    source_type = "archive_build"

    def __init__(self, enqueue_build: Optional[Callable[[str], None]] = None):
        self._enqueue_build = enqueue_build

    def enqueue_build(self, build_id: str) -> None:
        if self._enqueue_build is not None:
            self._enqueue_build(build_id)
            return
        from archivist.core.tasks.archives import build_archive_task

        build_archive_task.delay(build_id)

    async def attempt(self, session: AsyncSession, incident: Incident) -> RepairOutcome:
        build_id = _parse_uuid(incident.source_id)
        job = await session.get(BuildJob, build_id) if build_id else None
        if job is None:
            return RepairOutcome(resolved=False, applicable=False, message="build not found")

        if job.is_ready:
            return RepairOutcome(resolved=True, message="archive is ready")

        if not job.can_regenerate:
            return RepairOutcome(
                resolved=False,
                message=f"build escalated (failures={job.failure_count}, ticket={job.escalation_ticket_id})",
            )

        self.enqueue_build(str(job.id))
        return RepairOutcome(
            resolved=False,
            changes={"build_requeued": True, "resume_chunk": job.chunk_index + 1},
            message="build re-queued",
        )


class RepairStrategyRegistry:
    """Maps incident source types to repair strategies."""

    def __init__(self, strategies: Optional[List[RepairStrategy]] = None):
        self._strategies: Dict[str, RepairStrategy] = {}
        for strategy in strategies or []:
            self.register(strategy)

    def register(self, strategy: RepairStrategy) -> None:
        self._strategies[strategy.source_type] = strategy

    def get(self, source_type: str) -> Optional[RepairStrategy]:
        return self._strategies.get(source_type)

    @property
    def source_types(self) -> List[str]:
        return sorted(self._strategies)


def default_registry() -> RepairStrategyRegistry:
    return RepairStrategyRegistry([
        AssetPipelineRepair(),
        JobPipelineRepair(),
        ArchiveBuildRepair(),
    ])
