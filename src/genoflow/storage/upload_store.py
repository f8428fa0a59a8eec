"""Upload progress and merged-file record stores."""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, Optional
from uuid import uuid4


class UploadStatus(str, Enum):
    """Upload status enumeration."""

    PENDING = "pending"  # Receiving chunks
    MERGING = "merging"  # All chunks present, merge running
    COMPLETED = "completed"  # Merged and recorded as a file
    FAILED = "failed"  # Merge failed, staging kept for diagnosis
    ABANDONED = "abandoned"  # Dropped by the client or by timeout


@dataclass
class UploadRecord:
    """Upload progress row for one chunked upload."""

    upload_id: str
    project_id: str
    user_id: str
    file_name: str
    total_chunks: int
    status: UploadStatus
    created_at: datetime
    updated_at: datetime
    received_chunks: int = 0
    received_bytes: int = 0
    progress: int = 0
    file_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class FileRecord:
    """Merged file entity. Immutable once recorded."""

    project_id: str
    user_id: str
    file_name: str
    file_path: str
    size_bytes: int
    digest: str
    created_at: datetime
    file_id: str = field(default_factory=lambda: uuid4().hex)


class UploadStore:
    """In-memory store for upload progress records."""

    def __init__(self):
        self._uploads: Dict[str, UploadRecord] = {}
        self._lock = threading.Lock()

    def upsert(self, record: UploadRecord) -> None:
        """Store or replace an upload record."""
        with self._lock:
            self._uploads[record.upload_id] = record

    def get(self, upload_id: str) -> Optional[UploadRecord]:
        """Retrieve a copy of an upload record by upload_id."""
        with self._lock:
            record = self._uploads.get(upload_id)
            return replace(record) if record else None

    def update(self, upload_id: str, **changes) -> Optional[UploadRecord]:
        """Apply field changes to an upload record."""
        with self._lock:
            record = self._uploads.get(upload_id)
            if record is None:
                return None
            for name, value in changes.items():
                setattr(record, name, value)
            return replace(record)

    def list_all(self) -> list[UploadRecord]:
        """List all upload records."""
        with self._lock:
            return [replace(r) for r in self._uploads.values()]


class FileStore:
    """In-memory store for merged file records."""

    def __init__(self):
        self._files: Dict[str, FileRecord] = {}
        self._lock = threading.Lock()

    def create(self, record: FileRecord) -> FileRecord:
        with self._lock:
            self._files[record.file_id] = record
        return record

    def get(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            return self._files.get(file_id)

    def get_many(self, file_ids: Iterable[str], project_id: str) -> list[FileRecord]:
        """Return the records among ``file_ids`` that belong to ``project_id``, in request order."""
        with self._lock:
            found = (self._files.get(file_id) for file_id in file_ids)
            return [r for r in found if r is not None and r.project_id == project_id]

    def sizes_for_paths(self, paths: Iterable[str]) -> dict[str, int]:
        """Recorded sizes of the given physical paths; unknown paths are skipped."""
        wanted = set(paths)
        with self._lock:
            return {r.file_path: r.size_bytes for r in self._files.values() if r.file_path in wanted}

    def list_for_project(self, project_id: str) -> list[FileRecord]:
        with self._lock:
            records = [r for r in self._files.values() if r.project_id == project_id]
        return sorted(records, key=lambda r: r.created_at)
