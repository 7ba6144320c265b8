"""Health check endpoint."""

import logging
import time

from fastapi import APIRouter
from starlette.concurrency import run_in_threadpool

from resource_vault.api.dependencies import StoreDep
from resource_vault.api.models.health import DatabaseHealth, HealthResponse
from resource_vault.domain.ports import ResourceBackendPort

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


async def check_database_health(backend: ResourceBackendPort) -> DatabaseHealth:
    """Ping the backend and report connectivity.

    Security Impact:
        - Only checks connectivity, no resource data exposed
    """
    db_config = getattr(backend, "db_config", None)
    db_type = db_config.db_type if db_config is not None else "unknown"

    start_time = time.perf_counter()
    result = await run_in_threadpool(backend.ping)
    if result.is_failure():
        logger.warning(f"Backend ping failed: {result.error}")
        return DatabaseHealth(status="disconnected", type=db_type)

    response_time = (time.perf_counter() - start_time) * 1000
    return DatabaseHealth(status="connected", type=db_type, response_time_ms=round(response_time, 2))


@router.get("/health", response_model=HealthResponse)
async def health_check(store: StoreDep) -> HealthResponse:
    """Report service and backend health.

    Used by monitoring tools and load balancers; always answers 200 and
    signals an unreachable backend through ``status``.
    """
    db_health = await check_database_health(store.backend)
    overall_status = "healthy" if db_health.status == "connected" else "unhealthy"
    return HealthResponse(status=overall_status, database=db_health)
