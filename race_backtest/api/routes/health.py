"""
Health check endpoint.
"""

import time
from collections.abc import Awaitable, Callable

import structlog
from fastapi import APIRouter, Depends

from race_backtest.api.dependencies import get_dispatcher, get_job_store
from race_backtest.api.models import ComponentHealth, HealthResponse
from race_backtest.jobs.store import JobStore
from race_backtest.jobs.worker import LocalDispatcher, QueueDispatcher

router = APIRouter()
logger = structlog.get_logger(__name__)


async def _probe(check: Callable[[], Awaitable[bool]], details: dict) -> ComponentHealth:
    """Run one connectivity check and time it."""
    start = time.perf_counter()
    try:
        healthy = await check()
    except Exception as e:
        healthy = False
        details = {"error": str(e)}
    return ComponentHealth(
        status="healthy" if healthy else "unhealthy",
        latency_ms=round((time.perf_counter() - start) * 1000, 2),
        details=details,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description=(
        "Job store connectivity, the job stream in queue mode, and the number "
        "of backtests running in this process. No authentication."
    ),
)
async def health_check(
    store: JobStore = Depends(get_job_store),
    dispatcher: LocalDispatcher | QueueDispatcher = Depends(get_dispatcher),
) -> HealthResponse:
    components = {
        "job_store": await _probe(store.health_check, {"backend": type(store).__name__}),
    }
    if isinstance(dispatcher, QueueDispatcher):
        components["job_stream"] = await _probe(
            dispatcher.queue.health_check, {"stream": dispatcher.queue.stream_name}
        )

    unhealthy = [name for name, c in components.items() if c.status != "healthy"]
    if unhealthy:
        logger.warning("Health check degraded", unhealthy=unhealthy)

    return HealthResponse(
        status="degraded" if unhealthy else "healthy",
        components=components,
        running_jobs=dispatcher.active if isinstance(dispatcher, LocalDispatcher) else 0,
    )
