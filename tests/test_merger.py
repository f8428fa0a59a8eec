"""Tests for chunk reassembly and publication."""

import hashlib
from pathlib import Path

import pytest

from genoflow.core.exceptions import DuplicateContent, IncompleteUpload
from genoflow.uploads.hasher import hash_bytes
from genoflow.uploads.merger import Merger
from genoflow.uploads.session import SessionKey, UploadSession


def stage_session(backend, key: SessionKey, chunks: list[bytes], extension: str = ".h5ad") -> UploadSession:
    """Write chunks to staging and mark them received on a new session."""
    session = UploadSession(key=key, total_chunks=len(chunks), extension=extension)
    for index, data in enumerate(chunks):
        backend.write_chunk(key.upload_id, index, data)
        session.mark_received(index, len(data), hash_bytes(data))
    return session


@pytest.mark.asyncio
async def test_merge_concatenates_in_index_order(backend, merger, file_store, session_key):
    """Merged file is chunk 0..N-1 and is recorded in the file store."""
    chunks = [b"first-", b"second-", b"third"]
    session = stage_session(backend, session_key, chunks)

    record = await merger.merge(session)

    merged = b"".join(chunks)
    assert Path(record.file_path).read_bytes() == merged
    assert record.digest == hashlib.md5(merged).hexdigest()
    assert record.size_bytes == len(merged)
    assert record.project_id == "proj-1"
    assert record.file_name == "sample.h5ad"
    assert file_store.get(record.file_id) == record


@pytest.mark.asyncio
async def test_merge_removes_staging_and_temp_files(backend, merger, session_key):
    """Only the published file remains after a merge."""
    session = stage_session(backend, session_key, [b"abc", b"def"])

    record = await merger.merge(session)

    assert not (backend.staging_root / session_key.upload_id).exists()
    project_dir = Path(record.file_path).parent
    assert [p.name for p in project_dir.iterdir()] == [Path(record.file_path).name]


@pytest.mark.asyncio
async def test_merge_keeps_double_extension(backend, merger):
    """Gzipped tables keep their full suffix."""
    key = SessionKey("proj-1", "user-7", "counts.csv.gz")
    session = stage_session(backend, key, [b"gz-bytes"], extension=".csv.gz")

    record = await merger.merge(session)

    assert record.file_path.endswith(".csv.gz")


@pytest.mark.asyncio
async def test_missing_chunk_file_fails_and_keeps_staging(backend, merger, file_store, session_key):
    """A chunk missing from staging raises IncompleteUpload without recording a file."""
    session = stage_session(backend, session_key, [b"one", b"two", b"three"])
    backend.get_chunk_path(session_key.upload_id, 1).unlink()

    with pytest.raises(IncompleteUpload):
        await merger.merge(session)

    assert backend.chunk_exists(session_key.upload_id, 0)
    assert backend.chunk_exists(session_key.upload_id, 2)
    assert file_store.list_for_project("proj-1") == []


@pytest.mark.asyncio
async def test_unreceived_chunk_fails(backend, merger, session_key):
    """A bitmap gap fails the merge even if a file happens to be staged."""
    session = stage_session(backend, session_key, [b"one", b"two"])
    session.bitmap[1] = False

    with pytest.raises(IncompleteUpload):
        await merger.merge(session)


@pytest.mark.asyncio
async def test_size_mismatch_fails(backend, merger, session_key):
    """Staged bytes that disagree with recorded sizes fail the merge."""
    session = stage_session(backend, session_key, [b"one", b"two"])
    backend.write_chunk(session_key.upload_id, 1, b"two-but-longer")

    with pytest.raises(IncompleteUpload):
        await merger.merge(session)


@pytest.mark.asyncio
async def test_duplicate_content_reused(backend, merger, file_store):
    """Under the reuse policy, identical content points at the existing file."""
    chunks = [b"same", b"content"]
    first = await merger.merge(stage_session(backend, SessionKey("proj-1", "u1", "a.h5ad"), chunks))
    second = await merger.merge(stage_session(backend, SessionKey("proj-1", "u2", "b.h5ad"), chunks))

    assert first.file_path == second.file_path
    assert first.file_id != second.file_id
    assert len(file_store.list_for_project("proj-1")) == 2
    assert Path(first.file_path).read_bytes() == b"samecontent"


@pytest.mark.asyncio
async def test_duplicate_content_rejected(backend, file_store):
    """Under the reject policy, identical content raises DuplicateContent."""
    merger = Merger(backend, file_store, duplicate_policy="reject")
    chunks = [b"same", b"content"]
    await merger.merge(stage_session(backend, SessionKey("proj-1", "u1", "a.h5ad"), chunks))

    with pytest.raises(DuplicateContent):
        await merger.merge(stage_session(backend, SessionKey("proj-1", "u2", "b.h5ad"), chunks))

    assert len(file_store.list_for_project("proj-1")) == 1


def test_unknown_duplicate_policy(backend, file_store):
    with pytest.raises(ValueError):
        Merger(backend, file_store, duplicate_policy="overwrite")


@pytest.mark.asyncio
async def test_sha256_digest(backend, file_store, session_key):
    """The hash algorithm is configurable."""
    merger = Merger(backend, file_store, hash_algorithm="sha256")
    session = stage_session(backend, session_key, [b"abc"])

    record = await merger.merge(session)

    assert record.digest == hashlib.sha256(b"abc").hexdigest()
