"""Health check endpoint for genoflow."""

from fastapi import APIRouter, Depends

from genoflow.api.dependencies import get_container
from genoflow.core.config import settings
from genoflow.core.container import ServiceContainer

router = APIRouter()


@router.get("/health")
async def health_check(container: ServiceContainer = Depends(get_container)) -> dict:
    """Health check endpoint.

    Returns service status, name and version, plus queue and upload counters.
    Nothing here touches disk or the processing service.
    """
    return {
        "status": "ok",
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
        "uploads_in_flight": len(container.sessions),
        "tasks_active": container.queue.active_count,
        "tasks_queued": container.queue.pending_count,
    }
