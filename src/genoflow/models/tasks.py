"""Task API data models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from genoflow.tasks.models import MAX_DATA_FORMAT, MIN_DATA_FORMAT


class CreateTaskRequest(BaseModel):
    """Request model for creating a processing job."""

    project_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    file_ids: list[str] = Field(..., min_length=1, description="Merged file record ids")
    task_type: str = Field(..., min_length=1)
    name: str = ""
    data_format: int = Field(0, ge=MIN_DATA_FORMAT, le=MAX_DATA_FORMAT)
    priority: int = Field(0, ge=0, le=10)


class ExecutionResponse(BaseModel):
    attempt: int
    start_time: datetime
    end_time: Optional[datetime] = None
    execution_seconds: Optional[float] = None
    success: Optional[bool] = None
    error_message: Optional[str] = None
    total_size: int


class TaskResponse(BaseModel):
    """Response model for a processing job."""

    job_id: str
    project_id: str
    user_id: str
    name: str
    task_type: str
    data_format: int
    priority: int
    status: str
    progress: int
    total_size: int
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    executions: list[ExecutionResponse] = []
