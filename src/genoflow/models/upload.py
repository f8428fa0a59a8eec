"""Upload API data models."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel


class ChunkUploadResponse(BaseModel):
    """Response model for one chunk submission."""

    status: Literal["duplicate", "accepted", "completed"]
    upload_id: str
    index: int
    received_chunks: int
    total_chunks: int
    file_id: Optional[str] = None
    digest: Optional[str] = None
    size_bytes: Optional[int] = None


class UploadProgressResponse(BaseModel):
    """Response model for upload resumption queries."""

    upload_id: str
    status: str
    total_chunks: int
    received_chunks: int
    received_bytes: int
    progress: int
    missing_indices: list[int]
    file_id: Optional[str] = None
    error_message: Optional[str] = None


class FileResponse(BaseModel):
    """Response model for a merged file record."""

    file_id: str
    project_id: str
    user_id: str
    file_name: str
    file_path: str
    size_bytes: int
    digest: str
    created_at: datetime
