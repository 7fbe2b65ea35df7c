"""
Tests for the chunked archive build controller.

The object source and durable store are in-memory fakes (see conftest.py);
the database is a real SQLite schema so checkpoints and failure counters go
through the same UPDATE statements as in production.
"""

import errno
import uuid
import zipfile
from datetime import datetime
from unittest.mock import patch

import pytest
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import func, select

from archivist.core.archives.build_service import plan_entry_names
from archivist.core.archives.errors import (
    AttemptBudgetExceededError,
    BuildJobNotFoundError,
    EmptyArchiveError,
    RegenerationRejectedError,
)
from archivist.core.archives.management_service import ArchiveManagementService
from archivist.core.database.models import Ticket
from archivist.core.models import BuildStatus, FailureReason, TicketSeverity
from archivist.core.shared.database_service import database_service
from archivist.core.storage.archive_accumulator import ArchiveAccumulator
from archivist.core.storage.object_source import ObjectReadError

from conftest import load_build, make_objects


def _archive_names(archive_store, job):
    with zipfile.ZipFile(archive_store.open(job.archive_path)) as zf:
        return zf.namelist()


def _prefill_scratch(build_service, job, count):
    """Write the first ``count`` planned entries into the job's scratch archive."""
    with ArchiveAccumulator(build_service.scratch_path(job.id)) as archive:
        for key, name in plan_entry_names(job.objects)[:count]:
            archive.append(name, f"content of {key}".encode())


async def _ticket_count():
    async with database_service.get_session() as session:
        return (await session.execute(select(func.count()).select_from(Ticket))).scalar()


class TestPlanEntryNames:

    def test_duplicate_filenames_get_suffixes(self):
        planned = plan_entry_names([
            {"key": "a/1", "filename": "report.pdf"},
            {"key": "a/2", "filename": "report.pdf"},
            {"key": "a/3", "filename": "report.pdf"},
            {"key": "a/4", "filename": "notes"},
        ])
        assert [name for _, name in planned] == ["report.pdf", "report_1.pdf", "report_2.pdf", "notes"]

    def test_bare_keys_use_last_segment(self):
        assert plan_entry_names(["assets/x/photo.jpg"]) == [("assets/x/photo.jpg", "photo.jpg")]

    def test_plan_is_deterministic(self):
        objects = make_objects(20) + make_objects(5)
        assert plan_entry_names(objects) == plan_entry_names(list(objects))


class TestSuccessfulBuild:

    @pytest.mark.asyncio
    async def test_large_archive_checkpoints_every_chunk(self, build_service, create_build, archive_store, object_source):
        job = await create_build(150)

        with patch.object(build_service, "_checkpoint", wraps=build_service._checkpoint) as checkpoint:
            result = await build_service.build(job.id)

        assert checkpoint.await_count == 3
        assert result.status == BuildStatus.READY.value

        stored = await load_build(job.id)
        assert stored.status == BuildStatus.READY.value
        assert stored.chunk_index == 2
        assert stored.failure_count == 0
        assert stored.archive_path == f"archives/{job.tenant_id}/{job.id}/archive.zip"
        assert stored.archive_size_bytes > 0
        assert stored.completed_at is not None

        names = _archive_names(archive_store, stored)
        assert len(names) == 150
        assert len(object_source.fetched) == 150
        assert not build_service.scratch_path(job.id).exists()

    @pytest.mark.asyncio
    async def test_small_archive_single_chunk(self, build_service, create_build, archive_store):
        job = await create_build(3)
        await build_service.build(str(job.id))

        stored = await load_build(job.id)
        assert stored.status == BuildStatus.READY.value
        assert stored.chunk_index == 0
        assert sorted(_archive_names(archive_store, stored)) == ["file_0000.txt", "file_0001.txt", "file_0002.txt"]

    @pytest.mark.asyncio
    async def test_duplicate_filenames_all_archived(self, build_service, create_build, archive_store):
        objects = [{"key": f"assets/{i}/original", "filename": "scan.png"} for i in range(3)]
        job = await create_build(objects=objects)
        await build_service.build(job.id)

        stored = await load_build(job.id)
        assert sorted(_archive_names(archive_store, stored)) == ["scan.png", "scan_1.png", "scan_2.png"]

    @pytest.mark.asyncio
    async def test_ready_build_is_not_rebuilt(self, build_service, create_build, object_source):
        job = await create_build(5)
        await build_service.build(job.id)
        object_source.fetched.clear()

        result = await build_service.build(job.id)

        assert result.status == BuildStatus.READY.value
        assert object_source.fetched == []


class TestResume:

    @pytest.mark.asyncio
    async def test_resumes_after_last_checkpoint(self, build_service, create_build, object_source, archive_store):
        job = await create_build(
            150,
            status=BuildStatus.FAILED.value,
            chunk_index=0,
            failure_count=1,
            failure_reason=FailureReason.TIMEOUT.value,
            last_failed_at=datetime.utcnow(),
        )
        _prefill_scratch(build_service, job, 50)

        await build_service.build(job.id)

        assert len(object_source.fetched) == 100
        assert not any(key in object_source.fetched for key, _ in plan_entry_names(job.objects)[:50])

        stored = await load_build(job.id)
        assert stored.status == BuildStatus.READY.value
        assert stored.failure_count == 1
        assert len(_archive_names(archive_store, stored)) == 150

    @pytest.mark.asyncio
    async def test_mid_chunk_failure_resumes_without_duplicates(self, build_service, create_build, object_source, archive_store):
        job = await create_build(150)
        failing_key = job.objects[75]["key"]
        object_source.errors[failing_key] = ObjectReadError("GetObject failed", key=failing_key)

        await build_service.build(job.id)

        stored = await load_build(job.id)
        assert stored.status == BuildStatus.FAILED.value
        assert stored.chunk_index == 0
        assert stored.failure_count == 1
        assert stored.failure_reason == FailureReason.S3_READ_ERROR.value
        assert stored.archive_path is None

        object_source.errors.clear()
        object_source.fetched.clear()
        await build_service.build(job.id)

        # Chunk 1 entries 50-74 survived in scratch; only 75-149 are fetched
        assert len(object_source.fetched) == 75
        stored = await load_build(job.id)
        assert stored.status == BuildStatus.READY.value
        assert stored.failure_count == 1

        names = _archive_names(archive_store, stored)
        assert len(names) == 150
        assert len(set(names)) == 150

    @pytest.mark.asyncio
    async def test_lost_scratch_refetches_committed_entries(self, build_service, create_build, object_source, archive_store):
        job = await create_build(150, status=BuildStatus.FAILED.value, chunk_index=1)

        await build_service.build(job.id)

        assert len(object_source.fetched) == 150
        stored = await load_build(job.id)
        assert stored.status == BuildStatus.READY.value
        assert len(_archive_names(archive_store, stored)) == 150

    @pytest.mark.asyncio
    async def test_checkpoint_never_moves_backwards(self, build_service, create_build):
        job = await create_build(150, chunk_index=2)

        async with database_service.get_session() as session:
            row = await session.get(type(job), job.id)
            await build_service._checkpoint(session, row, 1)
            assert row.chunk_index == 2


class TestHardErrors:

    @pytest.mark.asyncio
    async def test_empty_build_is_rejected_without_failure(self, build_service, create_build, agent_trigger):
        job = await create_build(objects=[])

        with pytest.raises(EmptyArchiveError):
            await build_service.build(job.id)

        stored = await load_build(job.id)
        assert stored.failure_count == 0
        assert stored.status == BuildStatus.NONE.value
        agent_trigger.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_build(self, build_service, db):
        with pytest.raises(BuildJobNotFoundError):
            await build_service.build(uuid.uuid4())


class TestFailureEscalation:

    @pytest.mark.asyncio
    async def test_three_failures_escalate_once(self, build_service, create_build, object_source, agent_trigger):
        job = await create_build(10)
        first_key = job.objects[0]["key"]

        # 1: timeout -> agent, no ticket
        object_source.errors[first_key] = SoftTimeLimitExceeded()
        await build_service.build(job.id)
        stored = await load_build(job.id)
        assert stored.failure_count == 1
        assert stored.failure_reason == FailureReason.TIMEOUT.value
        assert stored.escalation_ticket_id is None
        agent_trigger.assert_called_once_with(str(job.id), FailureReason.TIMEOUT.value)

        # 2: read error -> agent (second failure), no ticket
        object_source.errors[first_key] = ObjectReadError("GetObject failed", key=first_key)
        await build_service.build(job.id)
        stored = await load_build(job.id)
        assert stored.failure_count == 2
        assert stored.escalation_ticket_id is None
        assert agent_trigger.call_count == 2

        # 3: disk full -> agent and ticket
        object_source.errors[first_key] = OSError(errno.ENOSPC, "No space left on device")
        await build_service.build(job.id)
        stored = await load_build(job.id)
        assert stored.failure_count == 3
        assert stored.failure_reason == FailureReason.DISK_FULL.value
        assert stored.escalation_ticket_id is not None
        assert stored.is_escalated
        assert not stored.can_regenerate
        assert agent_trigger.call_count == 3

        async with database_service.get_session() as session:
            ticket = await session.get(Ticket, stored.escalation_ticket_id)
            assert ticket.severity == TicketSeverity.P1.value
            assert ticket.payload["source_type"] == "archive_build"
            assert ticket.payload["source_id"] == str(job.id)
            assert ticket.payload["failure_count"] == 3

        # Escalated builds are not attempted again
        object_source.errors.clear()
        await build_service.build(job.id)
        assert (await load_build(job.id)).failure_count == 3

        management = ArchiveManagementService(
            session_factory=database_service.get_session,
            build_service=build_service,
            enqueue=lambda build_id: None,
        )
        with pytest.raises(RegenerationRejectedError) as exc_info:
            await management.regenerate(job.id)
        assert exc_info.value.ticket_id == str(stored.escalation_ticket_id)

        assert await _ticket_count() == 1

    @pytest.mark.asyncio
    async def test_single_read_error_does_not_trigger_agent(self, build_service, create_build, object_source, agent_trigger):
        job = await create_build(5)
        key = job.objects[2]["key"]
        object_source.errors[key] = ObjectReadError("GetObject failed", key=key)

        await build_service.build(job.id)

        agent_trigger.assert_not_called()
        assert (await load_build(job.id)).status == BuildStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_fail_records_budget_exhaustion_as_timeout(self, build_service, create_build, agent_trigger):
        job = await create_build(5)

        await build_service.fail(str(job.id), AttemptBudgetExceededError(job.id, 3))

        stored = await load_build(job.id)
        assert stored.status == BuildStatus.FAILED.value
        assert stored.failure_reason == FailureReason.TIMEOUT.value
        agent_trigger.assert_called_once()

    @pytest.mark.asyncio
    async def test_agent_dispatch_errors_do_not_fail_the_attempt(self, build_service, create_build, object_source, agent_trigger):
        job = await create_build(5)
        object_source.errors[job.objects[0]["key"]] = SoftTimeLimitExceeded()
        agent_trigger.side_effect = RuntimeError("broker down")

        result = await build_service.build(job.id)

        assert result.status == BuildStatus.FAILED.value
        assert (await load_build(job.id)).failure_count == 1

    @pytest.mark.asyncio
    async def test_failure_during_upload_keeps_build_unready(self, build_service, create_build, archive_store):
        job = await create_build(5)

        with patch.object(archive_store, "put", side_effect=OSError(errno.ENOSPC, "No space left on device")):
            await build_service.build(job.id)

        stored = await load_build(job.id)
        assert stored.status == BuildStatus.FAILED.value
        assert stored.archive_path is None
        assert stored.failure_reason == FailureReason.DISK_FULL.value
        assert archive_store.archives == {}
