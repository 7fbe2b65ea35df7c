"""
Tests for record_failure against a real (SQLite) session.
"""

import pytest
from celery.exceptions import SoftTimeLimitExceeded

from archivist.core.archives.failure_recorder import record_failure
from archivist.core.database.models import BuildJob
from archivist.core.models import FailureReason
from archivist.core.shared.database_service import database_service
from archivist.core.storage.object_source import ObjectReadError


class TestRecordFailure:

    @pytest.mark.asyncio
    async def test_first_failure_sets_fault_fields(self, create_build):
        job = await create_build(3)
        assert job.failure_count == 0
        assert job.failure_reason is None
        assert job.last_failed_at is None

        async with database_service.get_session() as session:
            row = await session.get(BuildJob, job.id)
            reason = await record_failure(session, row, SoftTimeLimitExceeded())

        assert reason == FailureReason.TIMEOUT
        async with database_service.get_session() as session:
            row = await session.get(BuildJob, job.id)
            assert row.failure_count == 1
            assert row.failure_reason == "timeout"
            assert row.last_failed_at is not None

    @pytest.mark.asyncio
    async def test_failures_accumulate_and_keep_latest_reason(self, create_build):
        job = await create_build(3)

        async with database_service.get_session() as session:
            row = await session.get(BuildJob, job.id)
            await record_failure(session, row, SoftTimeLimitExceeded())
            await record_failure(session, row, ObjectReadError("GetObject failed", key="k"))
            assert row.failure_count == 2

        async with database_service.get_session() as session:
            row = await session.get(BuildJob, job.id)
            assert row.failure_count == 2
            assert row.failure_reason == FailureReason.S3_READ_ERROR.value

    @pytest.mark.asyncio
    async def test_pending_changes_survive_recording(self, create_build):
        job = await create_build(3)

        async with database_service.get_session() as session:
            row = await session.get(BuildJob, job.id)
            row.status = "failed"
            await record_failure(session, row, RuntimeError("boom"))
            assert row.status == "failed"
            assert row.failure_reason == FailureReason.UNKNOWN.value
