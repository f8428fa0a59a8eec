"""Abstract storage backend interface."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator


class StorageBackend(ABC):
    """Abstract base class for chunk staging and published-file storage.

    Methods are synchronous and perform blocking I/O; async callers run them
    through ``asyncio.to_thread``.
    """

    @abstractmethod
    def get_chunk_path(self, upload_id: str, index: int) -> Path:
        """Return the staging path addressed by ``index`` for an upload."""
        pass

    @abstractmethod
    def write_chunk(self, upload_id: str, index: int, data: bytes) -> Path:
        """Persist chunk bytes to the upload's staging area.

        Args:
            upload_id: Upload identifier (names the staging directory)
            index: Zero-based chunk index
            data: Raw chunk bytes

        Returns:
            Path of the stored chunk
        """
        pass

    @abstractmethod
    def chunk_exists(self, upload_id: str, index: int) -> bool:
        """Check whether a chunk has been fully written."""
        pass

    @abstractmethod
    def iter_chunk(self, upload_id: str, index: int) -> Iterator[bytes]:
        """Stream a stored chunk in blocks."""
        pass

    @abstractmethod
    def get_target_path(self, project_id: str, digest: str, extension: str) -> Path:
        """Generate the content-addressed path for a merged file.

        Args:
            project_id: Owning project
            digest: Content digest of the merged bytes
            extension: File extension including the leading dot, or ""

        Returns:
            Target path for the file
        """
        pass

    @abstractmethod
    def create_temp_output(self, project_id: str, upload_id: str) -> Path:
        """Return a fresh temporary path for a merge in progress."""
        pass

    @abstractmethod
    def publish(self, temp_path: Path, target_path: Path) -> bool:
        """Atomically move a merged file into place.

        Returns:
            True if the file was published, False if ``target_path`` already
            existed (the temporary file is left for the caller to discard)
        """
        pass

    @abstractmethod
    def discard(self, path: Path) -> None:
        """Delete a temporary file if present."""
        pass

    @abstractmethod
    def remove_staging(self, upload_id: str) -> None:
        """Delete the staging directory of an upload."""
        pass

    @abstractmethod
    def get_backend_name(self) -> str:
        """Return backend identifier."""
        pass
