"""Main application entrypoint for genoflow."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from genoflow.api.middleware import HTTPErrorLoggingMiddleware
from genoflow.api.v1 import routes_health
from genoflow.api.v1.routes_tasks import router as tasks_router
from genoflow.api.v1.routes_upload import router as upload_router
from genoflow.core.config import Settings, settings
from genoflow.core.container import ServiceContainer, build_container
from genoflow.core.logging import setup_logging


def create_app(app_settings: Settings | None = None, container: ServiceContainer | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        app_settings: Settings override, defaults to the environment singleton
        container: Pre-built service container, mainly for tests

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app_settings = app_settings or settings

    # Initialize logging first
    setup_logging()

    container = container or build_container(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await container.start()
        try:
            yield
        finally:
            await container.stop()

    app = FastAPI(
        title=app_settings.SERVICE_NAME,
        version=app_settings.SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(HTTPErrorLoggingMiddleware)

    app.include_router(routes_health.router, tags=["health"])
    app.include_router(upload_router)
    app.include_router(tasks_router)

    return app


# Export app instance for ASGI servers
app = create_app()
