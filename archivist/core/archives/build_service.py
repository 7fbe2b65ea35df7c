"""
Chunked Build Controller - assembles a BuildJob's archive in resumable chunks.

An attempt walks the job's object list in chunks of ``archive_chunk_size``:

    for each chunk k > chunk_index:
        open scratch archive -> fetch + append each object -> close
        commit chunk_index = k

and finishes with a two-phase commit: the scratch archive is verified and
uploaded to durable storage first, and only then is the job marked READY.
Any exception inside the attempt is classified, recorded on the job, and run
through the escalation policy; nothing is re-raised to the queue. The Celery
task looks at the returned job to decide whether to retry.

Scratch archives live under ``archive_scratch_dir`` as
``archive_build_{build_id}.zip``. They are only touched by the attempt holding
the per-build lock (see tasks.archives).
"""

import logging
import os
import posixpath
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from archivist.config import settings
from archivist.core.database.models import BuildJob
from archivist.core.models import BuildStatus, FailureReason
from archivist.core.reliability.escalation_policy import (
    EscalationDecision,
    EscalationPolicy,
    escalation_policy,
)
from archivist.core.shared.database_service import database_service
from archivist.core.storage.archive_accumulator import ArchiveAccumulator
from archivist.core.storage.object_source import DurableStorage, ObjectSource

from .errors import ArchiveIntegrityError, BuildJobNotFoundError, EmptyArchiveError
from .escalation_service import ArchiveEscalationService, archive_escalation_service
from .failure_recorder import record_failure

logger = logging.getLogger("archivist.archives.build")

AgentTrigger = Callable[[str, str], None]


def plan_entry_names(objects: List[Union[Dict[str, Any], str]]) -> List[Tuple[str, str]]:
    """
    Resolve the archive entry name of every object, in order.

    Names come from the object's ``filename`` (or the last key segment).
    Repeated names get ``_1``, ``_2`` ... suffixes before the extension. The
    plan depends only on the ordered object list, so every attempt of a build
    computes the same names.

    Returns:
        List of (object key, entry name)
    """
    used = set()
    planned = []
    for obj in objects:
        if isinstance(obj, str):
            key, filename = obj, None
        else:
            key, filename = obj["key"], obj.get("filename")

        filename = (filename or posixpath.basename(key) or key).replace("\\", "/").lstrip("/")
        stem, ext = posixpath.splitext(filename)

        name = filename
        suffix = 1
        while name in used:
            name = f"{stem}_{suffix}{ext}"
            suffix += 1

        used.add(name)
        planned.append((key, name))
    return planned


def _dispatch_failure_agent(build_id: str, reason: str) -> None:
    from archivist.core.tasks.archives import run_archive_failure_agent_task

    run_archive_failure_agent_task.delay(build_id, reason)


class ArchiveBuildService:
    """
    Builds archives for BuildJobs.

    Args:
        object_source: Source of object bytes (defaults to MinIO assets bucket)
        store: Durable storage for finished archives (defaults to MinIO archives bucket)
        session_factory: Async context manager yielding a session
        policy: Escalation policy
        escalation: Ticket-opening service for builds
        agent_trigger: Called with (build_id, reason) when the policy asks for the agent
        chunk_size: Objects per checkpointed chunk
        scratch_dir: Directory for in-progress archives
    """

    def __init__(
        self,
        object_source: Optional[ObjectSource] = None,
        store: Optional[DurableStorage] = None,
        session_factory: Optional[Callable[[], Any]] = None,
        policy: Optional[EscalationPolicy] = None,
        escalation: Optional[ArchiveEscalationService] = None,
        agent_trigger: Optional[AgentTrigger] = None,
        chunk_size: Optional[int] = None,
        scratch_dir: Optional[Union[str, Path]] = None,
    ):
        self._object_source = object_source
        self._store = store
        self._session_factory = session_factory or database_service.get_session
        self.policy = policy or escalation_policy
        self.escalation = escalation or archive_escalation_service
        self.agent_trigger = agent_trigger or _dispatch_failure_agent
        self.chunk_size = chunk_size or settings.archive_chunk_size
        self.scratch_dir = Path(scratch_dir) if scratch_dir else settings.archive_scratch_path

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def _minio(self):
        from archivist.core.storage.minio_service import get_minio_service

        minio = get_minio_service()
        if minio is None:
            raise RuntimeError("Object storage is disabled (USE_OBJECT_STORAGE=false)")
        return minio

    @property
    def object_source(self) -> ObjectSource:
        if self._object_source is None:
            from archivist.core.storage.minio_service import MinIOObjectSource

            self._object_source = MinIOObjectSource(self._minio())
        return self._object_source

    @property
    def store(self) -> DurableStorage:
        if self._store is None:
            from archivist.core.storage.minio_service import MinIOArchiveStore

            self._store = MinIOArchiveStore(self._minio())
        return self._store

    def scratch_path(self, build_id: Union[str, UUID]) -> Path:
        return self.scratch_dir / f"archive_build_{build_id}.zip"

    @staticmethod
    def archive_path_for(job: BuildJob) -> str:
        return f"archives/{job.tenant_id}/{job.id}/archive.zip"

    # ------------------------------------------------------------------
    # Build attempt
    # ------------------------------------------------------------------

    async def build(self, build_id: Union[str, UUID]) -> BuildJob:
        """
        Run one build attempt.

        Safe to call again after any partial failure: work resumes from the
        chunk after the last checkpoint.

        Returns:
            The BuildJob as persisted at the end of the attempt

        Raises:
            BuildJobNotFoundError: No such build
            EmptyArchiveError: The build references no objects
        """
        if isinstance(build_id, str):
            build_id = UUID(build_id)

        decision: Optional[EscalationDecision] = None
        async with self._session_factory() as session:
            job = await session.get(BuildJob, build_id)
            if job is None:
                raise BuildJobNotFoundError(build_id)
            if not job.objects:
                raise EmptyArchiveError(build_id)

            if job.is_ready:
                logger.info(f"Build {build_id} is already ready; nothing to do")
                return job
            if not job.can_regenerate:
                logger.warning(
                    f"Build {build_id} is escalated (failures={job.failure_count}, "
                    f"ticket={job.escalation_ticket_id}); not attempting"
                )
                return job

            try:
                await self._run(session, job)
            except Exception as e:
                decision = await self._handle_failure(session, job, e)

        if decision is not None and decision.trigger_agent:
            self._trigger_agent(job)
        return job

    async def fail(self, build_id: Union[str, UUID], error: BaseException) -> BuildJob:
        """
        Record a failure that happened outside ``build`` (task-level errors,
        exhausted attempt budget) through the same classify/record/escalate path.
        """
        if isinstance(build_id, str):
            build_id = UUID(build_id)

        async with self._session_factory() as session:
            job = await session.get(BuildJob, build_id)
            if job is None:
                raise BuildJobNotFoundError(build_id)
            if job.is_ready:
                return job
            decision = await self._handle_failure(session, job, error)

        if decision.trigger_agent:
            self._trigger_agent(job)
        return job

    async def _run(self, session: AsyncSession, job: BuildJob) -> None:
        entries = plan_entry_names(job.objects)
        chunks = [entries[i:i + self.chunk_size] for i in range(0, len(entries), self.chunk_size)]
        scratch = self.scratch_path(job.id)

        job.status = BuildStatus.BUILDING.value
        job.total_objects = len(entries)
        await session.commit()

        start = job.chunk_index + 1
        logger.info(
            f"Building archive {job.id}: {len(entries)} objects, {len(chunks)} chunks, "
            f"resuming at chunk {start}"
        )

        if start > 0:
            self._restore_committed_entries(scratch, chunks[:start])

        for k in range(start, len(chunks)):
            with ArchiveAccumulator(scratch) as archive:
                for key, name in chunks[k]:
                    if archive.has_entry(name):
                        continue
                    archive.append(name, self.object_source.get_bytes(key))
            await self._checkpoint(session, job, k)

        await self._finalize(session, job, scratch, entries)

    def _restore_committed_entries(self, scratch: Path, committed: List[List[Tuple[str, str]]]) -> None:
        """Re-fetch checkpointed entries missing from the scratch archive (lost or corrupt scratch)."""
        with ArchiveAccumulator(scratch) as archive:
            missing = [(key, name) for chunk in committed for key, name in chunk if not archive.has_entry(name)]
            if not missing:
                return
            logger.warning(f"Scratch archive {scratch.name} is missing {len(missing)} committed entries; re-fetching")
            for key, name in missing:
                archive.append(name, self.object_source.get_bytes(key))

    async def _checkpoint(self, session: AsyncSession, job: BuildJob, chunk_index: int) -> None:
        """
        Durably record that chunks up to ``chunk_index`` are in the scratch archive.

        The WHERE clause only lets chunk_index move forward, so a stale
        concurrent attempt cannot roll progress back.
        """
        result = await session.execute(
            update(BuildJob)
            .where(BuildJob.id == job.id, BuildJob.chunk_index < chunk_index)
            .values(
                chunk_index=chunk_index,
                status=BuildStatus.BUILDING.value,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        await session.refresh(job)

        if result.rowcount == 0:
            logger.warning(f"Build {job.id}: checkpoint {chunk_index} already passed (chunk_index={job.chunk_index})")
        else:
            logger.debug(f"Build {job.id}: committed chunk {chunk_index}")

    async def _finalize(
        self,
        session: AsyncSession,
        job: BuildJob,
        scratch: Path,
        entries: List[Tuple[str, str]],
    ) -> None:
        names = ArchiveAccumulator.read_entry_names(scratch) or set()
        expected = {name for _, name in entries}
        if names != expected:
            raise ArchiveIntegrityError(job.id, expected=len(expected), actual=len(names & expected))

        # Phase two: the durable write happens before READY is persisted
        archive_path = self.archive_path_for(job)
        size = os.path.getsize(scratch)
        with open(scratch, "rb") as fh:
            self.store.put(archive_path, fh, size)

        job.status = BuildStatus.READY.value
        job.archive_path = archive_path
        job.archive_size_bytes = size
        job.completed_at = datetime.utcnow()
        await session.commit()

        logger.info(f"Build {job.id} ready: {archive_path} ({size} bytes, {len(names)} entries)")

        try:
            scratch.unlink()
        except OSError as e:
            logger.warning(f"Could not remove scratch archive {scratch}: {e}")

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def _handle_failure(self, session: AsyncSession, job: BuildJob, error: Exception) -> EscalationDecision:
        # Checkpoints are already committed; only the failed chunk's writes are dropped
        await session.rollback()
        await session.refresh(job)

        await record_failure(session, job, error)
        job.status = BuildStatus.FAILED.value
        job.archive_path = None
        await session.flush()

        decision = self.policy.decide_for_build(job)
        if decision.open_ticket:
            await self.escalation.create_ticket_if_needed(session, job)
        await session.commit()

        logger.info(
            f"Build {job.id} escalation decision: {[a.value for a in decision.actions]} "
            f"(failures={job.failure_count}, reason={job.failure_reason})"
        )
        return decision

    def _trigger_agent(self, job: BuildJob) -> None:
        reason = job.failure_reason or FailureReason.UNKNOWN.value
        try:
            self.agent_trigger(str(job.id), reason)
        except Exception as e:
            logger.error(f"Failed to dispatch failure agent for build {job.id}: {e}")


# Global service instance
archive_build_service = ArchiveBuildService()
