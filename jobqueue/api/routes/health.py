"""
Health check routes.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError

from jobqueue import __version__
from jobqueue.api.dependencies import CurrentServer
from jobqueue.clock import utcnow
from jobqueue.observability.metrics import get_metrics
from jobqueue.types.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _database_healthy(server: CurrentServer) -> bool:
    try:
        return await server.state_machine.ping()
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Database health check failed: {e}")
        return False


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API, the job server and the database.",
)
async def health_check(server: CurrentServer) -> HealthResponse:
    """
    Perform a health check.

    The service is degraded when the database does not answer; a stopped
    job server is reported but does not degrade it.
    """
    db_status = "healthy" if await _database_healthy(server) else "unhealthy"

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        version=__version__,
        database=db_status,
        server="stopped" if server.stopped else "running",
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(server: CurrentServer) -> dict:
    """Kubernetes readiness probe endpoint."""
    return {"ready": await _database_healthy(server)}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness probe endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
