import uuid

import pytest
from sqlalchemy import select

from archivist.core.archives.diagnostic_agent import ArchiveFailureAgent
from archivist.core.archives.errors import BuildJobNotFoundError
from archivist.core.database.models import AgentRun, BuildJob
from archivist.core.models import FailureReason
from archivist.core.shared.database_service import database_service


@pytest.fixture
def agent():
    return ArchiveFailureAgent(chunk_size=50)


def _job(**fields) -> BuildJob:
    defaults = dict(
        id=uuid.uuid4(),
        tenant_id=uuid.uuid4(),
        request_id="req",
        objects=[{"key": f"k{i}", "filename": f"f{i}"} for i in range(200)],
        total_objects=200,
        chunk_index=1,
        failure_count=1,
        failure_reason=FailureReason.TIMEOUT.value,
    )
    defaults.update(fields)
    return BuildJob(**defaults)


class TestDiagnose:

    def test_timeout_reports_progress(self, agent):
        diagnosis = agent.diagnose(_job())

        assert diagnosis["failure_reason"] == "timeout"
        assert diagnosis["retryable"] is True
        assert "50%" in diagnosis["summary"]
        assert diagnosis["context"]["objects_archived"] == 100

    def test_permission_error_is_critical_and_not_retryable(self, agent):
        diagnosis = agent.diagnose(_job(failure_reason=FailureReason.PERMISSION_ERROR.value))

        assert diagnosis["severity"] == "critical"
        assert diagnosis["retryable"] is False

    def test_explicit_reason_overrides_job(self, agent):
        assert agent.diagnose(_job(), FailureReason.DISK_FULL)["failure_reason"] == "disk_full"

    def test_unrecognized_reason_falls_back_to_unknown(self, agent):
        assert agent.diagnose(_job(), "cosmic_rays")["failure_reason"] == "unknown"

    def test_escalated_build_gets_extra_recommendation(self, agent):
        diagnosis = agent.diagnose(_job(failure_count=3))
        assert any("escalated" in r for r in diagnosis["recommendations"])


class TestRun:

    @pytest.mark.asyncio
    async def test_persists_agent_run(self, agent, create_build):
        job = await create_build(10, failure_count=2, failure_reason=FailureReason.S3_READ_ERROR.value, chunk_index=-1)

        async with database_service.get_session() as session:
            run = await agent.run(session, str(job.id))

        async with database_service.get_session() as session:
            runs = (await session.execute(select(AgentRun))).scalars().all()

        assert len(runs) == 1
        assert runs[0].id == run.id
        assert runs[0].agent_id == "archive_failure_agent"
        assert runs[0].subject_id == str(job.id)
        assert runs[0].failure_reason == "s3_read_error"
        assert runs[0].recommendations

    @pytest.mark.asyncio
    async def test_missing_build(self, agent, db):
        async with database_service.get_session() as session:
            with pytest.raises(BuildJobNotFoundError):
                await agent.run(session, uuid.uuid4())
