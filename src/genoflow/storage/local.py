"""Local filesystem storage backend."""

import logging
import os
import re
import shutil
from pathlib import Path
from typing import Iterator
from uuid import uuid4

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from genoflow.storage.base import StorageBackend

logger = logging.getLogger(__name__)

READ_BLOCK_SIZE = 65536  # 64KB blocks


def _is_transient_os_error(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and not isinstance(
        exc, (FileNotFoundError, FileExistsError, IsADirectoryError, PermissionError)
    )


class LocalStorageBackend(StorageBackend):
    """Local filesystem storage backend.

    Layout::

        {staging_root}/{upload_id}/{index}          staged chunks
        {upload_root}/{project_id}/{digest}{ext}    published files
        {upload_root}/{project_id}/temp_{upload_id}_{nonce}
    """

    def __init__(self, upload_root: str | Path, staging_root: str | Path):
        self.upload_root = Path(upload_root)
        self.staging_root = Path(staging_root)

    def get_chunk_path(self, upload_id: str, index: int) -> Path:
        return self.staging_root / self._sanitize_filename(upload_id) / str(index)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        retry=retry_if_exception(_is_transient_os_error),
        reraise=True,
    )
    def write_chunk(self, upload_id: str, index: int, data: bytes) -> Path:
        """Write chunk bytes via a temporary file so a partial write is never visible."""
        chunk_path = self.get_chunk_path(upload_id, index)
        chunk_path.parent.mkdir(parents=True, exist_ok=True)

        partial_path = chunk_path.with_name(f"{index}.{uuid4().hex}.part")
        try:
            with open(partial_path, "wb") as f:
                f.write(data)
            os.replace(partial_path, chunk_path)
        except OSError:
            partial_path.unlink(missing_ok=True)
            raise

        return chunk_path

    def chunk_exists(self, upload_id: str, index: int) -> bool:
        return self.get_chunk_path(upload_id, index).is_file()

    def iter_chunk(self, upload_id: str, index: int) -> Iterator[bytes]:
        with open(self.get_chunk_path(upload_id, index), "rb") as f:
            while block := f.read(READ_BLOCK_SIZE):
                yield block

    def get_target_path(self, project_id: str, digest: str, extension: str) -> Path:
        """Generate the content-addressed path ``{project}/{digest}{ext}``."""
        safe_ext = self._sanitize_filename(extension) if extension else ""
        return self.upload_root / self._sanitize_filename(project_id) / f"{digest}{safe_ext}"

    def create_temp_output(self, project_id: str, upload_id: str) -> Path:
        project_dir = self.upload_root / self._sanitize_filename(project_id)
        project_dir.mkdir(parents=True, exist_ok=True)
        return project_dir / f"temp_{self._sanitize_filename(upload_id)}_{uuid4().hex}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        retry=retry_if_exception(_is_transient_os_error),
        reraise=True,
    )
    def publish(self, temp_path: Path, target_path: Path) -> bool:
        if target_path.exists():
            logger.debug("Publish target already exists", extra={"target_path": str(target_path)})
            return False
        target_path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(temp_path, target_path)
        return True

    def discard(self, path: Path) -> None:
        Path(path).unlink(missing_ok=True)

    def remove_staging(self, upload_id: str) -> None:
        staging_dir = self.staging_root / self._sanitize_filename(upload_id)
        if staging_dir.exists():
            shutil.rmtree(staging_dir)

    def get_backend_name(self) -> str:
        return "local"

    @staticmethod
    def _sanitize_filename(filename: str) -> str:
        """Remove path traversal and dangerous characters."""
        safe = filename.replace("../", "").replace("..\\", "")
        safe = safe.replace("/", "_").replace("\\", "_")
        safe = re.sub(r"[^a-zA-Z0-9._-]", "_", safe)
        return safe[:255]
