"""
Health check routes.
"""

import logging

from fastapi import APIRouter, Request, Response, status
from sqlalchemy.exc import SQLAlchemyError

from webhook_relay import __version__
from webhook_relay.api.deps import get_queue, get_store
from webhook_relay.db.models import utcnow
from webhook_relay.observability.metrics import get_metrics
from webhook_relay.types.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the job store and dispatch queue connections.",
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": HealthResponse}},
)
async def health_check(request: Request, response: Response) -> HealthResponse:
    """
    Perform a health check.

    Both databases must answer for the service to be healthy; otherwise
    the response is 503 with status "degraded".

    Returns:
        HealthResponse with service status.
    """
    store_ok = await get_store(request).ping()
    queue_ok = await get_queue(request).database.ping()
    healthy = store_ok and queue_ok

    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        database="healthy" if store_ok else "unhealthy",
        queue="healthy" if queue_ok else "unhealthy",
        timestamp=utcnow(),
    )


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics(request: Request) -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = get_metrics()

    try:
        metrics_collector.update_queue_depth(await get_queue(request).get_depth())
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Could not refresh queue depth: {e}")

    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
