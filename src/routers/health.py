"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings
from src.connectors.health import HealthStatus, evaluate_health

router = APIRouter(tags=["system"])
logger = logging.getLogger("nocturne.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also summarizes connector health; any enabled connector that is failing
    marks the service as degraded.
    """
    settings = get_settings()
    host = getattr(request.app.state, "connector_host", None)

    connectors: dict[str, str] = {}
    if host is not None:
        for name, scheduler in sorted(host.schedulers.items()):
            connectors[name] = evaluate_health(scheduler).status.value

    failing = {HealthStatus.DEGRADED.value, HealthStatus.UNHEALTHY.value}
    degraded = host is None or not host.is_running or any(
        status in failing for status in connectors.values()
    )
    if degraded:
        logger.debug("Health check degraded: %s", connectors)

    return {
        "status": "degraded" if degraded else "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "connectors": connectors,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
