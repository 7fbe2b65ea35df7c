"""
Failure Recorder - persists one failed build attempt on its BuildJob.
"""

import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from archivist.core.database.models import BuildJob
from archivist.core.models import FailureReason

from .failure_classifier import classify

logger = logging.getLogger("archivist.archives.recorder")


async def record_failure(session: AsyncSession, job: BuildJob, error: BaseException) -> FailureReason:
    """
    Record a failed attempt on ``job``.

    The count, reason and timestamp are written by a single UPDATE that
    increments ``failure_count`` in the database, so two workers recording
    failures for the same build cannot lose an increment. The job instance is
    refreshed afterwards so callers see the persisted values.

    Args:
        session: Active session; the caller owns the transaction
        job: Build job that failed
        error: Exception caught at the top of the attempt

    Returns:
        The classified FailureReason
    """
    reason = classify(error)

    # Pending attribute changes would be lost by the refresh below
    await session.flush()

    await session.execute(
        update(BuildJob)
        .where(BuildJob.id == job.id)
        .values(
            failure_count=BuildJob.failure_count + 1,
            failure_reason=reason.value,
            last_failed_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.refresh(job)

    logger.error(
        f"Build {job.id} failed (attempt failure #{job.failure_count}, reason={reason.value}): {error}"
    )
    return reason
