"""Nocturne Connectors — FastAPI application entry point.

Starts one resilient polling scheduler per configured connector and exposes
their status and metrics.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI

from src.config import get_settings
from src.connectors.config_loader import get_connectors_config
from src.connectors.sync.host import ConnectorHost
from src.routers import connectors, health

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("nocturne")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting %s v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )

    path = Path(settings.connectors_config_path) if settings.connectors_config_path else None
    host = ConnectorHost.from_config(get_connectors_config(path), settings)
    app.state.connector_host = host
    host.start()
    try:
        yield
    finally:
        await host.stop()
        logger.info("%s shut down", settings.app_name)


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Nocturne Connectors",
        description=(
            "Resilient background sync of CGM, pump and diet data from "
            "third-party cloud APIs."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(connectors.router, prefix="/api/v1")

    return app


app = create_app()
