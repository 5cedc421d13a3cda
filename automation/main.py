"""FastAPI application for the content automation orchestrator.

Serves the manual trigger endpoints (start, stop, retry, run detail) and the
cron endpoints that drive the auto-trigger scheduler and the status poller.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from automation import __version__
from automation.clients.registry import ProviderRegistry
from automation.routes import automation
from automation.utils.logging import configure_logging, get_logger

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown of shared resources.

    Startup:
    - Configure structured logging
    - Build the provider registry from environment configuration

    Shutdown:
    - Close provider HTTP connections
    """
    configure_logging()
    app.state.providers = ProviderRegistry.from_environment()
    log.info("automation_api_started", version=__version__)

    yield  # Application runs here

    await app.state.providers.close()
    log.info("automation_api_stopped")


app = FastAPI(
    title="Content Automation Orchestrator",
    description="Drives image, video, voice and merge generation pipelines per channel",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(automation.router)
app.include_router(automation.cron_router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Liveness endpoint for the deployment platform."""
    return JSONResponse(
        content={
            "status": "healthy",
            "service": "content-automation",
            "version": __version__,
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container deployment
    uvicorn.run(
        "automation.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
