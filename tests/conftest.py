"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from genoflow.storage.job_store import JobStore
from genoflow.storage.local import LocalStorageBackend
from genoflow.storage.upload_store import FileStore, UploadStore
from genoflow.tasks.models import ProcessingJob
from genoflow.uploads.chunk_store import ChunkStore
from genoflow.uploads.merger import Merger
from genoflow.uploads.session import SessionKey, SessionRegistry


class FakeMonitor:
    """Resource monitor with a switchable overload flag."""

    def __init__(self, overloaded: bool = False):
        self.overloaded = overloaded
        self.checks = 0

    def is_overloaded(self) -> bool:
        self.checks += 1
        return self.overloaded


@pytest.fixture
def fake_monitor():
    """Monitor reporting no pressure until a test flips it."""
    return FakeMonitor()


@pytest.fixture
def backend(tmp_path):
    """Local backend rooted in a temporary directory."""
    return LocalStorageBackend(tmp_path / "uploads", tmp_path / "staging")


@pytest.fixture
def upload_store():
    return UploadStore()


@pytest.fixture
def file_store():
    return FileStore()


@pytest.fixture
def job_store():
    return JobStore()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def merger(backend, file_store):
    return Merger(backend, file_store)


@pytest.fixture
def chunk_store(backend, merger, registry, upload_store):
    return ChunkStore(backend, merger, registry, upload_store, max_total_chunks=1000)


@pytest.fixture
def session_key():
    return SessionKey(project_id="proj-1", user_id="user-7", file_name="sample.h5ad")


@pytest.fixture
def make_job(job_store):
    """Factory creating and storing processing jobs."""

    def _make(
        *,
        priority: int = 0,
        total_size: int = 10 * 1024 * 1024,
        age: timedelta = timedelta(0),
        file_paths: str = "uploads/proj-1/abc.h5ad",
        now: datetime | None = None,
    ) -> ProcessingJob:
        now = now or datetime.now(timezone.utc)
        job = ProcessingJob(
            project_id="proj-1",
            user_id="user-7",
            name="clustering",
            file_paths=file_paths,
            task_type="cluster",
            priority=priority,
            total_size=total_size,
            created_at=now - age,
        )
        return job_store.create(job)

    return _make
