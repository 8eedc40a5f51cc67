"""Pydantic models for connector status, metrics and runtime configuration."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from src.connectors.health import ConnectorHealth
from src.models.base import NocturneBase


# ---------- Status ----------

class ConnectorStatusRead(NocturneBase):
    name: str
    source: str
    status: str
    enabled: bool
    is_healthy: bool
    consecutive_failures: int
    last_successful_sync: datetime | None = None
    last_sync_time: datetime | None = None
    last_entry_time: datetime | None = None
    total_entries: int = 0
    entries_last_24_hours: int = 0

    @classmethod
    def from_health(cls, health: ConnectorHealth) -> "ConnectorStatusRead":
        return cls(
            name=health.name,
            source=health.source,
            status=health.status.value,
            enabled=health.enabled,
            is_healthy=health.is_healthy,
            consecutive_failures=health.consecutive_failures,
            last_successful_sync=health.last_successful_sync,
            last_sync_time=health.last_sync_time,
            last_entry_time=health.last_entry_time,
            total_entries=health.total_entries,
            entries_last_24_hours=health.entries_last_24_hours,
        )


# ---------- Metrics ----------

class ConnectorMetricsRead(NocturneBase):
    name: str
    total_items: dict[str, int] = Field(default_factory=dict)
    items_last_24_hours: dict[str, int] = Field(default_factory=dict)
    recent_timestamps: list[datetime] = Field(default_factory=list)
    last_entry_time: datetime | None = None
    last_sync_time: datetime | None = None

    @classmethod
    def from_health(cls, health: ConnectorHealth) -> "ConnectorMetricsRead":
        return cls(
            name=health.name,
            total_items={k.value: v for k, v in health.total_items.items()},
            items_last_24_hours={k.value: v for k, v in health.items_last_24_hours.items()},
            recent_timestamps=health.recent_timestamps,
            last_entry_time=health.last_entry_time,
            last_sync_time=health.last_sync_time,
        )


# ---------- Runtime configuration ----------

class ConnectorUpdate(NocturneBase):
    enabled: bool


class ConfigReloadResult(NocturneBase):
    version: str
    updated: list[str] = Field(default_factory=list)
