"""Chunk ingestion for resumable uploads."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from genoflow.core.exceptions import (
    ChunkConflict,
    DuplicateContent,
    InvalidChunkMetadata,
    UploadSessionNotFound,
)
from genoflow.core.logging import upload_key_context
from genoflow.storage.base import StorageBackend
from genoflow.storage.upload_store import FileRecord, UploadRecord, UploadStatus, UploadStore
from genoflow.uploads.hasher import hash_bytes
from genoflow.uploads.merger import Merger
from genoflow.uploads.session import (
    ChunkStatus,
    SessionKey,
    SessionRegistry,
    UploadSession,
    resolve_extension,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkSubmission:
    """Result of ``ChunkStore.submit_chunk``."""

    status: ChunkStatus
    upload_id: str
    received_chunks: int
    total_chunks: int
    file: Optional[FileRecord] = None


@dataclass(frozen=True)
class UploadProgress:
    upload_id: str
    status: UploadStatus
    total_chunks: int
    received_chunks: int
    received_bytes: int
    progress: int
    missing_indices: list[int]
    file_id: Optional[str] = None
    error_message: Optional[str] = None


class ChunkStore:
    """Accepts chunks, tracks arrival per session and triggers the merge once.

    Session locks guard bitmap and size bookkeeping only; chunk writes and
    the merge run with no lock held.
    """

    def __init__(
        self,
        backend: StorageBackend,
        merger: Merger,
        registry: SessionRegistry,
        upload_store: UploadStore,
        hash_algorithm: str = "md5",
        max_chunk_bytes: int | None = None,
        max_total_chunks: int | None = None,
        session_ttl: timedelta = timedelta(hours=24),
    ):
        self.backend = backend
        self.merger = merger
        self.registry = registry
        self.upload_store = upload_store
        self.hash_algorithm = hash_algorithm
        self.max_chunk_bytes = max_chunk_bytes
        self.max_total_chunks = max_total_chunks
        self.session_ttl = session_ttl

    def validate(self, index: int, total_chunks: int, size: int) -> None:
        """Reject bad chunk metadata before any state is touched.

        Raises:
            InvalidChunkMetadata: If index, total or size are out of range
        """
        if total_chunks < 1:
            raise InvalidChunkMetadata(f"Total chunk count must be >= 1, got {total_chunks}")
        if self.max_total_chunks is not None and total_chunks > self.max_total_chunks:
            raise InvalidChunkMetadata(
                f"Total chunk count {total_chunks} exceeds maximum of {self.max_total_chunks}"
            )
        if index < 0 or index >= total_chunks:
            raise InvalidChunkMetadata(f"Chunk index {index} outside [0, {total_chunks})")
        if self.max_chunk_bytes is not None and size > self.max_chunk_bytes:
            raise InvalidChunkMetadata(
                f"Chunk size {size} exceeds maximum of {self.max_chunk_bytes} bytes"
            )

    async def submit_chunk(
        self,
        key: SessionKey,
        index: int,
        total_chunks: int,
        data: bytes,
        extension: str | None = None,
    ) -> ChunkSubmission:
        """Store one chunk of an upload.

        Returns:
            ChunkSubmission with status duplicate, accepted or completed

        Raises:
            InvalidChunkMetadata: Bad index/total, no state created
            ChunkConflict: Index already holds different bytes, or is being written
            IncompleteUpload: Merge found missing chunks
            DuplicateContent: Merge found existing content under the "reject" policy
        """
        self.validate(index, total_chunks, len(data))
        token = upload_key_context.set(key.upload_id)
        try:
            session, created = await self.registry.get_or_create(
                key, total_chunks, resolve_extension(key.file_name, extension)
            )
            if created:
                now = datetime.now(timezone.utc)
                self.upload_store.upsert(
                    UploadRecord(
                        upload_id=key.upload_id,
                        project_id=key.project_id,
                        user_id=key.user_id,
                        file_name=key.file_name,
                        total_chunks=total_chunks,
                        status=UploadStatus.PENDING,
                        created_at=now,
                        updated_at=now,
                    )
                )
                logger.info(
                    "Upload session created",
                    extra={"upload_id": key.upload_id, "total_chunks": total_chunks},
                )

            digest = hash_bytes(data, self.hash_algorithm)

            async with session.lock:
                if session.completed or session.bitmap[index]:
                    return self._duplicate(session, index, digest)
                if index in session.writing:
                    raise ChunkConflict(f"Chunk {index} of {key.upload_id} is already being written")
                session.writing.add(index)

            try:
                await asyncio.to_thread(self.backend.write_chunk, key.upload_id, index, data)
            finally:
                async with session.lock:
                    session.writing.discard(index)

            async with session.lock:
                session.mark_received(index, len(data), digest)
                should_merge = session.is_complete and not session.merging
                if should_merge:
                    session.merging = True
                self.upload_store.update(
                    key.upload_id,
                    received_chunks=session.received_chunks,
                    received_bytes=session.received_bytes,
                    progress=session.progress,
                    status=UploadStatus.MERGING if should_merge else UploadStatus.PENDING,
                    updated_at=session.updated_at,
                )

            logger.debug(
                "Chunk stored",
                extra={
                    "upload_id": key.upload_id,
                    "chunk_index": index,
                    "size_bytes": len(data),
                    "received_chunks": session.received_chunks,
                    "total_chunks": total_chunks,
                },
            )

            if not should_merge:
                return ChunkSubmission(
                    status=ChunkStatus.ACCEPTED,
                    upload_id=key.upload_id,
                    received_chunks=session.received_chunks,
                    total_chunks=total_chunks,
                )

            record = await self._merge(session)
            return ChunkSubmission(
                status=ChunkStatus.COMPLETED,
                upload_id=key.upload_id,
                received_chunks=total_chunks,
                total_chunks=total_chunks,
                file=record,
            )
        finally:
            upload_key_context.reset(token)

    def _duplicate(self, session: UploadSession, index: int, digest: str) -> ChunkSubmission:
        stored = session.chunk_digests.get(index)
        if stored is not None and stored != digest:
            logger.warning(
                "Conflicting bytes for already received chunk",
                extra={"upload_id": session.upload_id, "chunk_index": index},
            )
            raise ChunkConflict(
                f"Chunk {index} of {session.upload_id} was already received with different content"
            )
        return ChunkSubmission(
            status=ChunkStatus.DUPLICATE,
            upload_id=session.upload_id,
            received_chunks=session.received_chunks,
            total_chunks=session.total_chunks,
        )

    async def _merge(self, session: UploadSession) -> FileRecord:
        try:
            record = await self.merger.merge(session)
        except DuplicateContent as e:
            await self._release(session, UploadStatus.FAILED, str(e))
            logger.warning(
                "Merged content already exists, upload released",
                extra={"upload_id": session.upload_id, "error": str(e)},
            )
            raise
        except Exception as e:
            async with session.lock:
                session.merging = False
            self.upload_store.update(
                session.upload_id,
                status=UploadStatus.FAILED,
                error_message=str(e),
                updated_at=datetime.now(timezone.utc),
            )
            logger.error(
                "Merge failed, staging kept",
                extra={"upload_id": session.upload_id, "error": str(e), "error_type": type(e).__name__},
            )
            raise

        async with session.lock:
            session.completed = True
        await self.registry.remove(session.key)
        self.upload_store.update(
            session.upload_id,
            status=UploadStatus.COMPLETED,
            progress=100,
            file_id=record.file_id,
            error_message=None,
            updated_at=datetime.now(timezone.utc),
        )
        return record

    async def retry_merge(self, key: SessionKey) -> FileRecord:
        """Re-run a failed merge for a session whose chunks are all present.

        Raises:
            UploadSessionNotFound: If no in-flight session exists
            IncompleteUpload: If chunks are still missing
        """
        session = self.registry.get(key)
        if session is None:
            raise UploadSessionNotFound(f"No in-flight upload for {key.upload_id}")
        async with session.lock:
            if session.merging:
                raise ChunkConflict(f"Upload {key.upload_id} is already merging")
            session.merging = True
        self.upload_store.update(key.upload_id, status=UploadStatus.MERGING, error_message=None)
        return await self._merge(session)

    def progress(self, key: SessionKey) -> UploadProgress:
        """Resumption info for a client: which chunks are still missing.

        Raises:
            UploadSessionNotFound: If the upload is unknown
        """
        record = self.upload_store.get(key.upload_id)
        if record is None:
            raise UploadSessionNotFound(f"No upload for {key.upload_id}")
        session = self.registry.get(key)
        return UploadProgress(
            upload_id=record.upload_id,
            status=record.status,
            total_chunks=record.total_chunks,
            received_chunks=record.received_chunks,
            received_bytes=record.received_bytes,
            progress=record.progress,
            missing_indices=session.missing_indices() if session else [],
            file_id=record.file_id,
            error_message=record.error_message,
        )

    async def abandon(self, key: SessionKey, reason: str = "abandoned by client") -> None:
        """Drop an in-flight upload and its staged chunks.

        Raises:
            UploadSessionNotFound: If no in-flight session exists
            ChunkConflict: If the session is merging or a chunk write is in flight
        """
        session = self.registry.get(key)
        if session is None:
            raise UploadSessionNotFound(f"No in-flight upload for {key.upload_id}")
        async with session.lock:
            if session.merging:
                raise ChunkConflict(f"Upload {key.upload_id} is merging and cannot be abandoned")
            if session.writing:
                raise ChunkConflict(
                    f"Upload {key.upload_id} has chunk writes in flight: {sorted(session.writing)}"
                )
            session.completed = True
        await self._release(session, UploadStatus.ABANDONED, reason)
        logger.info("Upload abandoned", extra={"upload_id": key.upload_id, "reason": reason})

    async def evict_stale(self, now: datetime | None = None) -> int:
        """Abandon sessions idle for longer than the session TTL."""
        evicted = 0
        for session in self.registry.stale_sessions(self.session_ttl, now):
            try:
                await self.abandon(session.key, reason="session expired")
                evicted += 1
            except (UploadSessionNotFound, ChunkConflict):
                continue
        if evicted:
            logger.info("Evicted stale upload sessions", extra={"evicted": evicted})
        return evicted

    async def _release(self, session: UploadSession, status: UploadStatus, reason: str) -> None:
        """Drop a finished session from the registry along with its staged chunks."""
        async with session.lock:
            session.completed = True
            session.merging = False
        await self.registry.remove(session.key)
        try:
            await asyncio.to_thread(self.backend.remove_staging, session.upload_id)
        except OSError as e:
            logger.warning(
                "Failed to remove staging directory of released upload",
                extra={"upload_id": session.upload_id, "error": str(e)},
            )
        self.upload_store.update(
            session.upload_id,
            status=status,
            error_message=reason,
            updated_at=datetime.now(timezone.utc),
        )
