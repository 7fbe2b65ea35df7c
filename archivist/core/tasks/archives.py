"""
Archive build Celery tasks for Archivist.

build_archive_task runs one build attempt under a per-build lock. The build
service never raises for a failed attempt; this task reads the resulting job
and decides whether the queue should try again:

    FAILED and can_regenerate and attempts left -> self.retry(countdown=backoff)
    otherwise                                    -> done

run_archive_failure_agent_task runs the diagnostic agent for a failed build.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from celery import Task

from archivist.celery_app import app as celery_app
from archivist.config import settings
from archivist.core.archives.build_service import archive_build_service
from archivist.core.archives.diagnostic_agent import archive_failure_agent
from archivist.core.archives.errors import (
    AttemptBudgetExceededError,
    BuildJobNotFoundError,
    EmptyArchiveError,
)
from archivist.core.models import BuildStatus
from archivist.core.shared.database_service import database_service
from archivist.core.shared.lock_service import lock_service

logger = logging.getLogger("archivist.tasks.archives")


def retry_countdown(retries: int) -> int:
    """Backoff before retry number ``retries + 1``; the last value repeats."""
    backoff = settings.archive_retry_backoff or [60]
    return backoff[min(retries, len(backoff) - 1)]


class ArchiveBuildTask(Task):
    """Records errors that escape the build service as build failures."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        build_id = args[0] if args else kwargs.get("build_id")
        if not build_id:
            return
        logger.error(f"build_archive_task {task_id} for build {build_id} failed outside the attempt: {exc}")
        try:
            asyncio.run(archive_build_service.fail(build_id, exc))
        except Exception as e:
            logger.error(f"Could not record task failure for build {build_id}: {e}")


async def _build_archive(build_id: str) -> Dict[str, Any]:
    async with lock_service.lock(
        f"archive_build:{build_id}", timeout=settings.archive_lock_timeout
    ) as acquired:
        if not acquired:
            logger.warning(f"Build {build_id} is locked by another attempt; skipping")
            return {"id": build_id, "status": "locked"}

        job = await archive_build_service.build(build_id)
        return job.to_dict()


@celery_app.task(
    bind=True,
    base=ArchiveBuildTask,
    name="archivist.tasks.build_archive_task",
    max_retries=None,
    acks_late=True,
    soft_time_limit=settings.celery_task_soft_time_limit,
    time_limit=settings.celery_task_time_limit,
)
def build_archive_task(self, build_id: str) -> Dict[str, Any]:
    """
    Run one archive build attempt.

    Args:
        build_id: BuildJob UUID string

    Returns:
        The job's operator-facing dict, or {"status": "locked"|"rejected", ...}
    """
    attempt = self.request.retries + 1
    max_attempts = settings.archive_build_max_attempts
    logger.info(f"Archive build {build_id}: attempt {attempt}/{max_attempts}")

    if attempt > max_attempts:
        job = asyncio.run(
            archive_build_service.fail(build_id, AttemptBudgetExceededError(build_id, max_attempts))
        )
        return job.to_dict()

    try:
        result = asyncio.run(_build_archive(build_id))
    except (BuildJobNotFoundError, EmptyArchiveError) as e:
        # Hard errors: retrying can never help
        logger.error(f"Archive build {build_id} rejected: {e}")
        return {"id": build_id, "status": "rejected", "error": str(e)}

    if (
        result.get("status") == BuildStatus.FAILED.value
        and result.get("can_regenerate")
        and attempt < max_attempts
    ):
        countdown = retry_countdown(self.request.retries)
        logger.info(
            f"Archive build {build_id} failed ({result.get('failure_reason')}); "
            f"retrying in {countdown}s"
        )
        raise self.retry(countdown=countdown)

    return result


async def _run_failure_agent(build_id: str, reason: Optional[str]) -> Dict[str, Any]:
    async with database_service.get_session() as session:
        run = await archive_failure_agent.run(session, build_id, reason)
        return {
            "agent_run_id": str(run.id),
            "build_id": build_id,
            "failure_reason": run.failure_reason,
            "severity": run.severity,
            "summary": run.summary,
            "recommendations": run.recommendations,
        }


@celery_app.task(
    bind=True,
    name="archivist.tasks.run_archive_failure_agent_task",
    autoretry_for=(Exception,),
    dont_autoretry_for=(BuildJobNotFoundError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def run_archive_failure_agent_task(self, build_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    """Diagnose a failed build and store the AgentRun."""
    logger.info(f"Running failure agent for build {build_id} (reason={reason})")
    return asyncio.run(_run_failure_agent(build_id, reason))
