"""
Archive failure diagnostic agent.

Runs after a failed build attempt when the escalation policy asks for an
automated diagnostic pass. The agent reads the build's persisted state,
produces a diagnosis (summary, severity, recommended actions) and stores it
as an AgentRun for operators. It never opens tickets and never changes the
build; escalation to humans is decided by the policy alone.

Agent runs are not deduplicated: a build can be diagnosed once per failure.
"""

import logging
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from archivist.config import settings
from archivist.core.database.models import AgentRun, BuildJob
from archivist.core.models import FailureReason, IncidentSeverity

from .errors import BuildJobNotFoundError

logger = logging.getLogger("archivist.archives.agent")

AGENT_ID = "archive_failure_agent"

# Diagnosis rules per failure reason; summary and recommendations are format templates
_DIAGNOSES: Dict[FailureReason, Dict[str, Any]] = {
    FailureReason.TIMEOUT: {
        "severity": IncidentSeverity.WARNING,
        "retryable": True,
        "summary": "Build ran out of time after {progress}% of objects ({done}/{total}).",
        "recommendations": [
            "Retry the build; it resumes from the last committed chunk.",
            "If single chunks approach the task time limit, lower ARCHIVE_CHUNK_SIZE.",
            "Check object storage latency for the assets bucket.",
        ],
    },
    FailureReason.DISK_FULL: {
        "severity": IncidentSeverity.ERROR,
        "retryable": True,
        "summary": "Worker scratch storage is full ({progress}% of objects archived).",
        "recommendations": [
            "Free space on the volume holding ARCHIVE_SCRATCH_DIR.",
            "Remove stale archive_build_*.zip scratch files for finished builds.",
            "Retry the build once space is available.",
        ],
    },
    FailureReason.S3_READ_ERROR: {
        "severity": IncidentSeverity.ERROR,
        "retryable": True,
        "summary": "Reading source objects from object storage failed at chunk {next_chunk}.",
        "recommendations": [
            "Verify the objects of this download still exist in the assets bucket.",
            "Check object storage health and network connectivity from workers.",
            "Retry the build; committed chunks are not fetched again.",
        ],
    },
    FailureReason.PERMISSION_ERROR: {
        "severity": IncidentSeverity.CRITICAL,
        "retryable": False,
        "summary": "Object storage denied access while building the archive.",
        "recommendations": [
            "Check the worker's object storage credentials and bucket policy.",
            "Do not retry until access is restored; retries will fail the same way.",
        ],
    },
    FailureReason.UNKNOWN: {
        "severity": IncidentSeverity.WARNING,
        "retryable": True,
        "summary": "Build failed for an unclassified reason at chunk {next_chunk}.",
        "recommendations": [
            "Inspect worker logs for build {build_id}.",
            "Retry the build once; escalate if it fails again.",
        ],
    },
}


class ArchiveFailureAgent:
    """Rule-based diagnosis of failed archive builds."""

    agent_id = AGENT_ID

    def __init__(self, chunk_size: Optional[int] = None):
        self.chunk_size = chunk_size or settings.archive_chunk_size

    def diagnose(self, job: BuildJob, reason: Optional[Union[str, FailureReason]] = None) -> Dict[str, Any]:
        """Build the diagnosis for ``job``. Pure; does not persist anything."""
        try:
            reason = FailureReason(reason or job.failure_reason or FailureReason.UNKNOWN.value)
        except ValueError:
            reason = FailureReason.UNKNOWN

        total = job.total_objects or len(job.objects or [])
        done = min(total, (job.chunk_index + 1) * self.chunk_size)
        progress = int(done * 100 / total) if total else 0
        values = {
            "build_id": job.id,
            "done": done,
            "total": total,
            "progress": progress,
            "next_chunk": job.chunk_index + 1,
        }

        rule = _DIAGNOSES[reason]
        recommendations: List[str] = [r.format(**values) for r in rule["recommendations"]]
        if not job.can_regenerate:
            recommendations.append("Build is escalated; further automatic retries are disabled.")

        return {
            "failure_reason": reason.value,
            "severity": rule["severity"].value,
            "retryable": rule["retryable"],
            "summary": rule["summary"].format(**values),
            "recommendations": recommendations,
            "context": {
                "failure_count": job.failure_count,
                "chunk_index": job.chunk_index,
                "total_objects": total,
                "objects_archived": done,
                "progress_percent": progress,
                "escalation_ticket_id": str(job.escalation_ticket_id) if job.escalation_ticket_id else None,
            },
        }

    async def run(
        self,
        session: AsyncSession,
        build_id: Union[str, UUID],
        reason: Optional[str] = None,
    ) -> AgentRun:
        if isinstance(build_id, str):
            build_id = UUID(build_id)

        job = await session.get(BuildJob, build_id)
        if job is None:
            raise BuildJobNotFoundError(build_id)

        diagnosis = self.diagnose(job, reason)
        run = AgentRun(
            agent_id=self.agent_id,
            subject_type="archive_build",
            subject_id=str(job.id),
            tenant_id=job.tenant_id,
            failure_reason=diagnosis["failure_reason"],
            severity=diagnosis["severity"],
            summary=diagnosis["summary"],
            recommendations=diagnosis["recommendations"],
            context=diagnosis["context"],
        )
        session.add(run)
        await session.flush()

        logger.info(
            f"Diagnosed build {job.id} ({diagnosis['failure_reason']}, {diagnosis['severity']}): "
            f"{diagnosis['summary']}"
        )
        return run


archive_failure_agent = ArchiveFailureAgent()
