"""Reassembly of staged chunks into a published, content-addressed file."""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path

from genoflow.core.exceptions import DuplicateContent, IncompleteUpload
from genoflow.storage.base import StorageBackend
from genoflow.storage.upload_store import FileRecord, FileStore
from genoflow.uploads.hasher import IncrementalHasher
from genoflow.uploads.session import UploadSession

logger = logging.getLogger(__name__)

DUPLICATE_POLICIES = ("reuse", "reject")


class Merger:
    """Concatenates chunks 0..N-1 and records the result as a file entity."""

    def __init__(
        self,
        backend: StorageBackend,
        file_store: FileStore,
        hash_algorithm: str = "md5",
        duplicate_policy: str = "reuse",
    ):
        if duplicate_policy not in DUPLICATE_POLICIES:
            raise ValueError(f"Unknown duplicate content policy: {duplicate_policy}")
        self.backend = backend
        self.file_store = file_store
        self.hash_algorithm = hash_algorithm
        self.duplicate_policy = duplicate_policy

    async def merge(self, session: UploadSession) -> FileRecord:
        """Merge a fully received session.

        Args:
            session: Session whose bitmap is fully true

        Returns:
            The recorded FileRecord

        Raises:
            IncompleteUpload: If a chunk is missing or sizes disagree; staging is kept
            DuplicateContent: If the content exists and the policy is "reject"
        """
        upload_id = session.upload_id
        missing = [
            i for i in range(session.total_chunks)
            if not session.bitmap[i] or not await asyncio.to_thread(self.backend.chunk_exists, upload_id, i)
        ]
        if missing:
            logger.error(
                "Merge attempted with missing chunks",
                extra={"upload_id": upload_id, "missing": missing[:20], "missing_count": len(missing)},
            )
            raise IncompleteUpload(f"Upload {upload_id} is missing chunks {missing[:20]}")

        temp_path = await asyncio.to_thread(
            self.backend.create_temp_output, session.key.project_id, upload_id
        )
        try:
            digest, written = await asyncio.to_thread(self._concatenate, session, temp_path)

            expected = sum(session.chunk_sizes.values())
            if written != expected or written != session.received_bytes:
                raise IncompleteUpload(
                    f"Upload {upload_id} merged {written} bytes, expected {expected}"
                )

            target_path = self.backend.get_target_path(session.key.project_id, digest, session.extension)
            published = await asyncio.to_thread(self.backend.publish, temp_path, target_path)
            if not published:
                if self.duplicate_policy == "reject":
                    raise DuplicateContent(f"Content {digest} already exists at {target_path}")
                logger.info(
                    "Merged content already stored, reusing existing file",
                    extra={"upload_id": upload_id, "digest": digest, "file_path": str(target_path)},
                )
        finally:
            await asyncio.to_thread(self.backend.discard, temp_path)

        record = self.file_store.create(
            FileRecord(
                project_id=session.key.project_id,
                user_id=session.key.user_id,
                file_name=session.key.file_name,
                file_path=str(target_path),
                size_bytes=written,
                digest=digest,
                created_at=datetime.now(timezone.utc),
            )
        )

        try:
            await asyncio.to_thread(self.backend.remove_staging, upload_id)
        except OSError as e:
            logger.warning(
                "Failed to remove staging directory after merge",
                extra={"upload_id": upload_id, "error": str(e)},
            )

        logger.info(
            "Upload merged",
            extra={
                "upload_id": upload_id,
                "file_id": record.file_id,
                "digest": digest,
                "size_bytes": written,
                "total_chunks": session.total_chunks,
            },
        )
        return record

    def _concatenate(self, session: UploadSession, temp_path: Path) -> tuple[str, int]:
        """Write chunks in index order to ``temp_path``, hashing the same stream."""
        hasher = IncrementalHasher(self.hash_algorithm)
        written = 0
        try:
            with open(temp_path, "wb") as out:
                for index in range(session.total_chunks):
                    hasher.update(index, b"")
                    for block in self.backend.iter_chunk(session.upload_id, index):
                        out.write(block)
                        hasher.update(index, block)
                        written += len(block)
        except FileNotFoundError as e:
            raise IncompleteUpload(f"Chunk vanished during merge of {session.upload_id}: {e}") from e
        return hasher.hexdigest(), written
