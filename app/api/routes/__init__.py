from __future__ import annotations

from app.api.routes.api import router as api_router
from app.api.routes.health import router as health_router

__all__ = ["api_router", "health_router"]
