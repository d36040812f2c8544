"""FastAPI application for explicit publish requests.

The API process serves single-video requests only. Recurring sweeps run in
the separate worker process (``python -m republisher.worker``).
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from republisher import __version__
from republisher.clients.google_oauth import GoogleOAuthClient
from republisher.database import async_session_factory, dispose_engine
from republisher.routes import videos
from republisher.services.publish_orchestrator import create_publish_orchestrator
from republisher.utils.logging import configure_logging

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the orchestrator on startup, dispose the engine on shutdown."""
    configure_logging()

    if async_session_factory is not None:
        app.state.orchestrator = create_publish_orchestrator(
            async_session_factory, GoogleOAuthClient()
        )
        log.info("api_publishing_enabled")
    else:
        app.state.orchestrator = None
        log.warning(
            "api_publishing_disabled",
            message="DATABASE_URL not set, publish endpoints will return 503",
        )

    yield

    await dispose_engine()


app = FastAPI(
    title="Channel Republisher",
    description="Re-publishes source channel videos to a destination channel on a schedule",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(videos.router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    return JSONResponse(
        content={
            "status": "healthy",
            "service": "republisher",
            "version": __version__,
        }
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "republisher.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
