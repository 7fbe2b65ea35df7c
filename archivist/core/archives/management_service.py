"""
Archive management - requesting builds and regenerating them.

This is the entry point download flows use: ``request_build`` records a new
BuildJob for an ordered object list and queues its first attempt;
``regenerate`` re-queues an existing build on operator or user request.

Regeneration rules:
    - rejected once the build is escalated (3 failures) or has a ticket
    - a READY build is rebuilt from scratch; its old archive is removed
    - a FAILED build resumes from its last committed chunk
    - failure history is kept; a later success does not reset it
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import select

from archivist.core.database.models import BuildJob
from archivist.core.models import BuildStatus
from archivist.core.shared.database_service import database_service
from archivist.core.storage.archive_accumulator import ArchiveAccumulator

from .build_service import ArchiveBuildService, archive_build_service
from .errors import BuildJobNotFoundError, EmptyArchiveError, RegenerationRejectedError

logger = logging.getLogger("archivist.archives.management")


def _enqueue_build(build_id: str) -> None:
    from archivist.core.tasks.archives import build_archive_task

    build_archive_task.delay(build_id)


class ArchiveManagementService:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]] = None,
        build_service: Optional[ArchiveBuildService] = None,
        enqueue: Optional[Callable[[str], None]] = None,
    ):
        self._session_factory = session_factory or database_service.get_session
        self.build_service = build_service or archive_build_service
        self.enqueue = enqueue or _enqueue_build

    async def request_build(
        self,
        tenant_id: UUID,
        request_id: str,
        objects: List[Union[Dict[str, str], str]],
    ) -> BuildJob:
        """
        Create a build job for a download and queue its first attempt.

        Args:
            tenant_id: Owning tenant
            request_id: Download request the archive belongs to
            objects: Ordered list of {"key", "filename"} dicts (or bare keys)

        Raises:
            EmptyArchiveError: objects is empty
        """
        normalized = [
            {"key": obj, "filename": None} if isinstance(obj, str) else {"key": obj["key"], "filename": obj.get("filename")}
            for obj in objects
        ]
        if not normalized:
            raise EmptyArchiveError(request_id)

        async with self._session_factory() as session:
            job = BuildJob(
                tenant_id=tenant_id,
                request_id=str(request_id),
                status=BuildStatus.NONE.value,
                objects=normalized,
                total_objects=len(normalized),
                chunk_index=-1,
            )
            session.add(job)
            await session.flush()
            build_id = str(job.id)

        logger.info(f"Requested archive build {build_id} for request {request_id} ({len(normalized)} objects)")
        self.enqueue(build_id)
        return job

    async def regenerate(self, build_id: Union[str, UUID]) -> BuildJob:
        """
        Re-queue a build.

        Raises:
            BuildJobNotFoundError: No such build
            RegenerationRejectedError: The build is escalated or has a ticket
        """
        if isinstance(build_id, str):
            build_id = UUID(build_id)

        stale_archive: Optional[str] = None
        async with self._session_factory() as session:
            job = (
                await session.execute(
                    select(BuildJob)
                    .where(BuildJob.id == build_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()
            if job is None:
                raise BuildJobNotFoundError(build_id)

            if not job.can_regenerate:
                ticket_id = str(job.escalation_ticket_id) if job.escalation_ticket_id else None
                reason = (
                    f"escalated to support ticket {ticket_id}" if ticket_id
                    else f"failed {job.failure_count} times"
                )
                raise RegenerationRejectedError(job.id, reason, ticket_id=ticket_id)

            if job.is_ready:
                stale_archive = job.archive_path
                job.status = BuildStatus.NONE.value
                job.chunk_index = -1
                job.archive_path = None
                job.archive_size_bytes = None
                job.completed_at = None

        if stale_archive:
            ArchiveAccumulator(self.build_service.scratch_path(build_id)).discard()
            try:
                self.build_service.store.delete(stale_archive)
            except Exception as e:
                logger.warning(f"Could not delete previous archive {stale_archive}: {e}")

        logger.info(
            f"Regenerating build {build_id} from chunk {job.chunk_index + 1} "
            f"(failures so far: {job.failure_count})"
        )
        self.enqueue(str(build_id))
        return job

    async def get_build(self, build_id: Union[str, UUID]) -> Optional[Dict[str, Any]]:
        if isinstance(build_id, str):
            build_id = UUID(build_id)
        async with self._session_factory() as session:
            job = await session.get(BuildJob, build_id)
            return job.to_dict() if job else None


archive_management_service = ArchiveManagementService()
