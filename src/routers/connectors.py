"""Connector status, metrics and runtime configuration endpoints."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.connectors.config_loader import ConfigValidationError, reload_connectors_config
from src.connectors.health import evaluate_health
from src.dependencies import AppSettings, Host, get_scheduler
from src.models.base import ErrorDetail
from src.models.connectors import (
    ConfigReloadResult,
    ConnectorMetricsRead,
    ConnectorStatusRead,
    ConnectorUpdate,
)

router = APIRouter(
    prefix="/connectors",
    tags=["connectors"],
    responses={404: {"model": ErrorDetail}, 503: {"model": ErrorDetail}},
)
logger = logging.getLogger("nocturne.routers.connectors")


# ---------- Status ----------

@router.get("", response_model=list[ConnectorStatusRead])
async def list_connectors(host: Host) -> Any:
    return [
        ConnectorStatusRead.from_health(evaluate_health(s))
        for _, s in sorted(host.schedulers.items())
    ]


@router.get("/{name}", response_model=ConnectorStatusRead)
async def get_connector(name: str, host: Host) -> Any:
    return ConnectorStatusRead.from_health(evaluate_health(get_scheduler(host, name)))


# ---------- Metrics ----------

@router.get("/{name}/metrics", response_model=ConnectorMetricsRead)
async def get_connector_metrics(
    name: str, host: Host, recent: int = Query(default=10, ge=0, le=50)
) -> Any:
    health = evaluate_health(get_scheduler(host, name), recent=recent)
    return ConnectorMetricsRead.from_health(health)


@router.post("/{name}/metrics/reset", status_code=204)
async def reset_connector_metrics(name: str, host: Host) -> None:
    get_scheduler(host, name).metrics.reset()
    logger.info("Metrics reset for connector %s", name)


# ---------- Runtime configuration ----------

@router.patch("/{name}", response_model=ConnectorStatusRead)
async def update_connector(name: str, body: ConnectorUpdate, host: Host) -> Any:
    scheduler = get_scheduler(host, name)
    new_config = scheduler.config.model_copy(update={"enabled": body.enabled})
    scheduler.on_configuration_changed(new_config)
    return ConnectorStatusRead.from_health(evaluate_health(scheduler))


@router.post("/reload", response_model=ConfigReloadResult)
async def reload_config(host: Host, settings: AppSettings) -> Any:
    path = Path(settings.connectors_config_path) if settings.connectors_config_path else None
    try:
        config = reload_connectors_config(path)
    except (ConfigValidationError, FileNotFoundError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    updated = host.apply_configuration(config)
    return ConfigReloadResult(version=config.version, updated=updated)
