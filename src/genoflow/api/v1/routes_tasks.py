"""Processing task API routes."""

import logging

from fastapi import APIRouter, Body, Depends, HTTPException

from genoflow.api.dependencies import get_file_store, get_job_store, get_task_queue
from genoflow.core.exceptions import InvalidJobTransition, JobNotFound
from genoflow.models.tasks import CreateTaskRequest, ExecutionResponse, TaskResponse
from genoflow.storage.job_store import JobStore
from genoflow.storage.upload_store import FileStore
from genoflow.tasks.models import FILE_PATH_DELIMITER, ProcessingJob
from genoflow.tasks.queue import TaskQueue

router = APIRouter(prefix="/api/v1/tasks", tags=["tasks"])
logger = logging.getLogger(__name__)


def _task_response(job: ProcessingJob, job_store: JobStore) -> TaskResponse:
    return TaskResponse(
        job_id=job.id,
        project_id=job.project_id,
        user_id=job.user_id,
        name=job.name,
        task_type=job.task_type,
        data_format=job.data_format,
        priority=job.priority,
        status=job.status.value,
        progress=job.progress,
        total_size=job.total_size,
        error_message=job.error_message,
        created_at=job.created_at,
        updated_at=job.updated_at,
        executions=[
            ExecutionResponse(
                attempt=log.attempt,
                start_time=log.start_time,
                end_time=log.end_time,
                execution_seconds=log.execution_seconds,
                success=log.success,
                error_message=log.error_message,
                total_size=log.total_size,
            )
            for log in job_store.list_executions(job.id)
        ],
    )


@router.post("", response_model=TaskResponse, status_code=201)
async def create_task(
    request: CreateTaskRequest = Body(...),
    file_store: FileStore = Depends(get_file_store),
    job_store: JobStore = Depends(get_job_store),
) -> TaskResponse:
    """Create a pending job over merged files; the scheduler admits it later."""
    requested = list(dict.fromkeys(request.file_ids))
    files = file_store.get_many(requested, request.project_id)
    if not files:
        raise HTTPException(status_code=400, detail="No matching files found for project")
    if len(files) != len(requested):
        found = {f.file_id for f in files}
        missing = [file_id for file_id in requested if file_id not in found]
        raise HTTPException(status_code=400, detail=f"Unknown files for project: {', '.join(missing)}")

    job = job_store.create(
        ProcessingJob(
            project_id=request.project_id,
            user_id=request.user_id,
            name=request.name,
            file_paths=FILE_PATH_DELIMITER.join(f.file_path for f in files),
            task_type=request.task_type,
            data_format=request.data_format,
            priority=request.priority,
            total_size=sum(f.size_bytes for f in files),
        )
    )
    logger.info(
        f"Task created: job_id={job.id}, project_id={job.project_id}, files={len(files)}, "
        f"total_size={job.total_size}"
    )
    return _task_response(job, job_store)


@router.get("/{job_id}", response_model=TaskResponse)
async def get_task(
    job_id: str,
    job_store: JobStore = Depends(get_job_store),
) -> TaskResponse:
    """Return job status, progress, last error and attempts."""
    job = job_store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return _task_response(job, job_store)


@router.post("/{job_id}/cancel", response_model=TaskResponse)
async def cancel_task(
    job_id: str,
    job_store: JobStore = Depends(get_job_store),
    queue: TaskQueue = Depends(get_task_queue),
) -> TaskResponse:
    """Cancel a pending or processing job."""
    try:
        job = queue.cancel(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Task not found")
    except InvalidJobTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _task_response(job, job_store)
