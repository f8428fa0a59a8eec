"""Chunked upload API routes."""

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile

from genoflow.api.dependencies import get_chunk_store, get_file_store
from genoflow.core.exceptions import (
    ChunkConflict,
    DuplicateContent,
    IncompleteUpload,
    InvalidChunkMetadata,
    UploadSessionNotFound,
)
from genoflow.models.upload import ChunkUploadResponse, FileResponse, UploadProgressResponse
from genoflow.storage.upload_store import FileRecord, FileStore
from genoflow.uploads.chunk_store import ChunkStore
from genoflow.uploads.session import SessionKey

router = APIRouter(prefix="/api/v1", tags=["upload"])
logger = logging.getLogger(__name__)


def _session_key(project_id: str, user_id: str, file_name: str) -> SessionKey:
    project_id, user_id, file_name = project_id.strip(), user_id.strip(), file_name.strip()
    if not project_id or not user_id or not file_name:
        raise HTTPException(status_code=400, detail="project_id, user_id and file_name are required")
    return SessionKey(project_id=project_id, user_id=user_id, file_name=file_name)


def _file_response(record: FileRecord) -> FileResponse:
    return FileResponse(
        file_id=record.file_id,
        project_id=record.project_id,
        user_id=record.user_id,
        file_name=record.file_name,
        file_path=record.file_path,
        size_bytes=record.size_bytes,
        digest=record.digest,
        created_at=record.created_at,
    )


@router.post("/files/upload", response_model=ChunkUploadResponse, status_code=200)
async def upload_chunk(
    file: UploadFile = File(...),
    project_id: str = Form(...),
    user_id: str = Form(...),
    file_name: str = Form(...),
    index: int = Form(...),
    total_chunks: int = Form(...),
    file_extension: str | None = Form(None),
    chunk_store: ChunkStore = Depends(get_chunk_store),
) -> ChunkUploadResponse:
    """Upload one chunk of a file; the last missing chunk triggers the merge."""
    key = _session_key(project_id, user_id, file_name)
    data = await file.read()

    try:
        result = await chunk_store.submit_chunk(key, index, total_chunks, data, extension=file_extension)
    except InvalidChunkMetadata as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (ChunkConflict, DuplicateContent) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except IncompleteUpload as e:
        logger.error(f"Merge failed for {key.upload_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to merge upload")

    response = ChunkUploadResponse(
        status=result.status.value,
        upload_id=result.upload_id,
        index=index,
        received_chunks=result.received_chunks,
        total_chunks=result.total_chunks,
    )
    if result.file is not None:
        response.file_id = result.file.file_id
        response.digest = result.file.digest
        response.size_bytes = result.file.size_bytes
        logger.info(
            f"Upload completed: upload_id={result.upload_id}, file_id={result.file.file_id}, "
            f"size={result.file.size_bytes}"
        )
    return response


@router.get("/files/upload/progress", response_model=UploadProgressResponse)
async def upload_progress(
    project_id: str = Query(...),
    user_id: str = Query(...),
    file_name: str = Query(...),
    chunk_store: ChunkStore = Depends(get_chunk_store),
) -> UploadProgressResponse:
    """Report received and missing chunks so a client can resume."""
    key = _session_key(project_id, user_id, file_name)
    try:
        progress = chunk_store.progress(key)
    except UploadSessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return UploadProgressResponse(
        upload_id=progress.upload_id,
        status=progress.status.value,
        total_chunks=progress.total_chunks,
        received_chunks=progress.received_chunks,
        received_bytes=progress.received_bytes,
        progress=progress.progress,
        missing_indices=progress.missing_indices,
        file_id=progress.file_id,
        error_message=progress.error_message,
    )


@router.delete("/files/upload", status_code=204)
async def abandon_upload(
    project_id: str = Query(...),
    user_id: str = Query(...),
    file_name: str = Query(...),
    chunk_store: ChunkStore = Depends(get_chunk_store),
) -> None:
    """Abandon an in-flight upload and delete its staged chunks."""
    key = _session_key(project_id, user_id, file_name)
    try:
        await chunk_store.abandon(key)
    except UploadSessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ChunkConflict as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/projects/{project_id}/files", response_model=list[FileResponse])
async def list_project_files(
    project_id: str,
    file_store: FileStore = Depends(get_file_store),
) -> list[FileResponse]:
    """List merged files of a project."""
    return [_file_response(r) for r in file_store.list_for_project(project_id)]
