from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import RedirectResponse

from app.core.config import settings
from app.core.rate_limit import enforce_rate_limit
from app.schemas.api import ErrorResponse, MessageResponse

router = APIRouter(tags=["API"])


@router.get(
    "/api",
    response_model=MessageResponse,
    dependencies=[Depends(enforce_rate_limit)],
    responses={
        307: {"description": "Allowed; redirected to the configured success URL"},
        400: {"model": ErrorResponse, "description": "Client address could not be determined"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        503: {"model": ErrorResponse, "description": "Rate limiter unavailable"},
    },
)
async def protected_endpoint():
    """Rate-limited endpoint.

    Allowed requests are served directly, or redirected to ``APP_SUCCESS_URL``
    when one is configured.
    """
    if settings.app.success_url:
        return RedirectResponse(
            url=settings.app.success_url,
            status_code=status.HTTP_307_TEMPORARY_REDIRECT,
        )
    return MessageResponse(message="Request processed successfully!")
