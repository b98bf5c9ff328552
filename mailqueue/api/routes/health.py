"""
Health check and metrics routes.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue import __version__
from mailqueue.db import get_async_session
from mailqueue.db.repository import EmailQueueRepository
from mailqueue.observability.metrics import get_metrics
from mailqueue.types.api import HealthResponse
from mailqueue.utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _database_reachable(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Database health check failed", exc_info=True)
        return False
    return True


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and database connection.",
)
async def health_check(
    session: AsyncSession = Depends(get_async_session),
) -> HealthResponse:
    """
    Perform a health check.

    Also refreshes the queue depth gauge when the database is reachable.
    """
    healthy = await _database_reachable(session)

    if healthy:
        depth = await EmailQueueRepository(session).get_queue_depth()
        get_metrics().update_queue_depth(depth)

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        database="healthy" if healthy else "unhealthy",
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    """Kubernetes readiness probe endpoint."""
    return {"ready": await _database_reachable(session)}


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
    """Expose Prometheus metrics."""
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
