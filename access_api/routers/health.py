"""Health check router.

Endpoints:
    GET /api/health - Liveness probe (no auth)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from .. import __version__
from ..middleware.rate_limit import rate_limit_health
from ..models import HealthStatus

router = APIRouter()
logger = logging.getLogger("access_api.health")


@router.get("/health", response_model=HealthStatus)
@rate_limit_health
async def health_check(request: Request) -> dict:
    """Basic health check - no auth required."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "version": __version__,
    }
