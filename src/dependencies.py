"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.connectors.sync.host import ConnectorHost
from src.connectors.sync.scheduler import SyncScheduler


async def get_connector_host(request: Request) -> ConnectorHost:
    """Return the host created by the app lifespan."""
    host: ConnectorHost | None = getattr(request.app.state, "connector_host", None)
    if host is None:
        raise HTTPException(status_code=503, detail="Connectors are not running")
    return host


def get_scheduler(host: ConnectorHost, name: str) -> SyncScheduler:
    scheduler = host.get(name)
    if scheduler is None:
        raise HTTPException(status_code=404, detail=f"Unknown connector '{name}'")
    return scheduler


# Annotated shortcuts for route signatures
Host = Annotated[ConnectorHost, Depends(get_connector_host)]
AppSettings = Annotated[Settings, Depends(get_settings)]
