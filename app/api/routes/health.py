from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.core import rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check() -> JSONResponse:
    """Liveness and readiness check.

    Pings the bucket store without touching any bucket, so probes never
    consume tokens. Used by load balancers to take a degraded instance out
    of rotation.

    Returns:
        JSONResponse: 200 ``{"status": "healthy"}`` when the store answers,
            503 ``{"status": "unhealthy", ...}`` otherwise.
    """

    store = rate_limit.get_rate_limiter().store
    if await store.ping():
        return JSONResponse(status_code=200, content={"status": "healthy"})

    logger.error("health.store_unreachable", extra={"store": store.name})
    return JSONResponse(
        status_code=503,
        content={"status": "unhealthy", "reason": f"{store.name} store connection failed"},
    )
