"""Pydantic schemas for HTTP responses."""

from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, Field


class MessageResponse(BaseModel):
    """Body returned by an allowed request served directly."""

    message: str = Field(..., description="Human-readable outcome.")


class ErrorBody(BaseModel):
    code: str = Field(..., description="Machine-readable error code.")
    message: str = Field(..., description="Human-readable, non-leaky message.")
    request_id: str | None = Field(
        default=None, description="Correlation id echoed in X-Request-ID."
    )
    details: Dict[str, Any] | None = Field(
        default=None,
        description="Structured context, e.g. the rate-limited identifier.",
    )


class ErrorResponse(BaseModel):
    """Envelope shared by every 4xx/5xx response."""

    error: ErrorBody
