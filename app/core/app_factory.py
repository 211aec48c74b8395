"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers,
store lifecycle) to improve testability compared to a monolithic main.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api.routes import api_router, health_router
from app.core import rate_limit
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.core.openapi import apply_openapi_customizations

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Check store connectivity on startup and close it on shutdown.

    An unreachable store does not abort startup: the instance comes up
    degraded, /health reports 503 and limited routes answer 503 until the
    store is back.
    """
    limiter = rate_limit.get_rate_limiter()
    if await limiter.store.ping():
        logger.info(
            "startup.store_ready",
            extra={
                "store": limiter.store.name,
                "strategy": limiter.strategy,
                "capacity": limiter.config.capacity,
                "refill_rate": limiter.config.refill_rate,
                "ttl_s": limiter.config.ttl_seconds,
            },
        )
    else:
        logger.error("startup.store_unreachable", extra={"store": limiter.store.name})

    try:
        yield
    finally:
        logger.info("shutdown.closing_store", extra={"store": limiter.store.name})
        await rate_limit.close_rate_limiter()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Token Bucket Rate Limiter",
        description=(
            "Per-client token bucket rate limiting with state kept in Redis so "
            "that any number of stateless instances enforce one shared quota."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(api_router)
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
