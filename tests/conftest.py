import os
import shutil
import tempfile
import uuid
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

# Configure a throwaway database and scratch directory before importing
# archivist modules; settings and the database engine are created at import.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="archivist_pytest_"))

os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_SESSION_DIR / 'archivist_test.db'}"
os.environ.setdefault("ARCHIVE_SCRATCH_DIR", str(_SESSION_DIR / "scratch"))

# Keep external integrations quiet during tests
os.environ.setdefault("USE_OBJECT_STORAGE", "false")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("RELIABILITY_RECOVERY_ENABLED", "false")

from archivist.core.archives.build_service import ArchiveBuildService  # noqa: E402
from archivist.core.database.models import BuildJob  # noqa: E402
from archivist.core.shared.database_service import database_service  # noqa: E402
from archivist.core.storage.object_source import ObjectNotFoundError  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    """Cleanup temporary test files after the test session."""
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


class FakeObjectSource:
    """In-memory ObjectSource; ``errors`` maps a key to the exception its read raises."""

    def __init__(self, objects: Optional[Dict[str, bytes]] = None):
        self.objects = dict(objects or {})
        self.errors: Dict[str, BaseException] = {}
        self.fetched: List[str] = []

    def exists(self, key: str) -> bool:
        return key in self.objects

    def get_bytes(self, key: str) -> bytes:
        if key in self.errors:
            raise self.errors[key]
        if key not in self.objects:
            raise ObjectNotFoundError(f"Failed to read {key}: NoSuchKey", key=key)
        self.fetched.append(key)
        return self.objects[key]


class FakeArchiveStore:
    """In-memory DurableStorage."""

    def __init__(self):
        self.archives: Dict[str, bytes] = {}
        self.deleted: List[str] = []

    def put(self, path: str, stream, length: int) -> str:
        data = stream.read()
        assert len(data) == length
        self.archives[path] = data
        return f"etag-{len(self.archives)}"

    def delete(self, path: str) -> bool:
        self.deleted.append(path)
        self.archives.pop(path, None)
        return True

    def open(self, path: str) -> BytesIO:
        return BytesIO(self.archives[path])


def make_objects(count: int, prefix: str = "assets") -> List[Dict[str, str]]:
    return [
        {"key": f"{prefix}/{i:04d}/original", "filename": f"file_{i:04d}.txt"}
        for i in range(count)
    ]


@pytest_asyncio.fixture
async def db():
    """Fresh schema for every test."""
    await database_service.drop_all()
    await database_service.init_db()
    yield database_service


@pytest.fixture
def tenant_id():
    return uuid.uuid4()


@pytest.fixture
def object_source():
    return FakeObjectSource()


@pytest.fixture
def archive_store():
    return FakeArchiveStore()


@pytest.fixture
def agent_trigger():
    return MagicMock()


@pytest.fixture
def build_service(object_source, archive_store, agent_trigger, tmp_path):
    return ArchiveBuildService(
        object_source=object_source,
        store=archive_store,
        session_factory=database_service.get_session,
        agent_trigger=agent_trigger,
        chunk_size=50,
        scratch_dir=tmp_path / "scratch",
    )


@pytest.fixture
def create_build(db, object_source, tenant_id):
    """Factory: persist a BuildJob whose objects exist in ``object_source``."""

    async def _create(count: int = 10, **fields) -> BuildJob:
        objects = fields.pop("objects", None)
        if objects is None:
            objects = make_objects(count)
        for obj in objects:
            object_source.objects.setdefault(obj["key"], f"content of {obj['key']}".encode())

        async with database_service.get_session() as session:
            job = BuildJob(
                tenant_id=fields.pop("tenant_id", tenant_id),
                request_id=fields.pop("request_id", f"req-{uuid.uuid4().hex[:8]}"),
                objects=objects,
                total_objects=len(objects),
                **fields,
            )
            session.add(job)
            await session.flush()
        return job

    return _create


async def load_build(build_id) -> BuildJob:
    async with database_service.get_session() as session:
        return await session.get(BuildJob, build_id)
