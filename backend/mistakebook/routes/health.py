"""
MistakeBook Backend — Health Check Route
=========================================

What:  GET /health for Docker health checks and load balancer probes.
How:   SELECT 1 against the question store, plus configuration and circuit
       state of every recognition provider. No provider API is called, so
       polling costs no quota.

Status levels:
    healthy:   database connected and at least one provider available
    degraded:  only one of the two
    unhealthy: neither
"""

import logging
import time

from fastapi import APIRouter, Depends

from mistakebook import __version__
from mistakebook.database import check_connection
from mistakebook.routes.deps import get_orchestrator
from mistakebook.schemas.common import HealthResponse
from mistakebook.services.orchestrator import RecognitionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(
    orchestrator: RecognitionOrchestrator = Depends(get_orchestrator),
) -> HealthResponse:
    db_status = "connected"
    try:
        await check_connection()
    except Exception as e:
        db_status = "disconnected"
        logger.warning("Health check: database unreachable: %s", str(e))

    providers = await orchestrator.health()
    any_provider = any(p.available for p in providers.values())
    db_ok = db_status == "connected"

    if db_ok and any_provider:
        overall = "healthy"
    elif db_ok or any_provider:
        overall = "degraded"
    else:
        overall = "unhealthy"

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        providers=providers,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
