"""FastAPI dependencies resolving components from the app's service container."""

from fastapi import Request

from genoflow.core.container import ServiceContainer
from genoflow.storage.job_store import JobStore
from genoflow.storage.upload_store import FileStore
from genoflow.tasks.queue import TaskQueue
from genoflow.uploads.chunk_store import ChunkStore


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_chunk_store(request: Request) -> ChunkStore:
    return get_container(request).chunk_store


def get_file_store(request: Request) -> FileStore:
    return get_container(request).file_store


def get_job_store(request: Request) -> JobStore:
    return get_container(request).job_store


def get_task_queue(request: Request) -> TaskQueue:
    return get_container(request).queue
