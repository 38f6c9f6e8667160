"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from jobqueue import __version__
from jobqueue.api.routes import auth_router, health_router, methods_router
from jobqueue.config import get_settings
from jobqueue.constants import PermissionGroup
from jobqueue.db import close_db, get_engine, init_db
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import setup_metrics
from jobqueue.observability.tracing import instrument_fastapi, instrument_sqlalchemy, setup_tracing
from jobqueue.server.dispatcher import JobServer
from jobqueue.server.state_machine import JobStateMachine

logger = logging.getLogger(__name__)


async def create_job_server() -> JobServer:
    """
    Build the job server over the configured database.

    Callers listed in `api_admin_callers` are granted the admin group.
    """
    settings = get_settings()
    session_factory = await init_db()
    server = JobServer(JobStateMachine(session_factory))
    if settings.api_admin_callers:
        server.allow(**{PermissionGroup.ADMIN: settings.api_admin_callers})
    if settings.server_autostart:
        await server.start_server()
    return server


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events. A job server handed to
    `create_app` is used as is and left running on shutdown.
    """
    settings = get_settings()

    # Startup
    setup_logging()
    setup_metrics()
    if settings.otel_enabled:
        setup_tracing()

    owned = app.state.job_server is None
    if owned:
        app.state.job_server = await create_job_server()
        if settings.otel_enabled:
            instrument_sqlalchemy(get_engine())

    logger.info("Application started", extra={"methods": len(app.state.job_server.methods)})

    yield

    # Shutdown
    if owned:
        await app.state.job_server.close()
        app.state.job_server = None
        await close_db()
    logger.info("Application shutdown")


def create_app(job_server: JobServer | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        job_server: Job server to expose. Defaults to one created over the
            configured database at startup.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Job Queue API",
        description="Persistent, distributed job queue",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.job_server = job_server

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(methods_router)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "jobqueue.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
