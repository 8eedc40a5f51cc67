"""Connector health derived from scheduler state and metrics.

The dashboard's "disconnected" badge comes from ``consecutive_failures``,
never from raw exceptions:

    disabled   — connector is in standby
    healthy    — last cycle succeeded (or none has run yet)
    degraded   — failing, still in the fast-poll phase
    unhealthy  — failing beyond ``max_fast_poll_attempts`` (backoff phase)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from src.connectors.base import SyncDataType
from src.connectors.sync.scheduler import SyncScheduler

RECENT_TIMESTAMPS_IN_REPORT = 10


class HealthStatus(str, Enum):
    DISABLED = "disabled"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class ConnectorHealth:
    """Health report for one connector."""

    name: str
    source: str
    status: HealthStatus
    enabled: bool
    consecutive_failures: int
    last_successful_sync: datetime | None
    last_sync_time: datetime | None
    last_entry_time: datetime | None
    total_entries: int
    entries_last_24_hours: int
    total_items: dict[SyncDataType, int] = field(default_factory=dict)
    items_last_24_hours: dict[SyncDataType, int] = field(default_factory=dict)
    recent_timestamps: list[datetime] = field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


def evaluate_health(
    scheduler: SyncScheduler, recent: int = RECENT_TIMESTAMPS_IN_REPORT
) -> ConnectorHealth:
    """Build a ``ConnectorHealth`` from a scheduler's current state."""
    state = scheduler.state
    config = scheduler.config
    snapshot = scheduler.metrics.snapshot(recent=recent)

    if state.is_in_standby or not config.enabled:
        status = HealthStatus.DISABLED
    elif state.consecutive_failures == 0:
        status = HealthStatus.HEALTHY
    elif state.consecutive_failures <= scheduler.options.max_fast_poll_attempts:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.UNHEALTHY

    return ConnectorHealth(
        name=scheduler.connector_name,
        source=config.source,
        status=status,
        enabled=config.enabled,
        consecutive_failures=state.consecutive_failures,
        last_successful_sync=state.last_successful_sync,
        last_sync_time=snapshot.last_sync_time,
        last_entry_time=snapshot.last_entry_time,
        total_entries=snapshot.total_entries,
        entries_last_24_hours=snapshot.entries_last_24_hours,
        total_items=snapshot.total_items,
        items_last_24_hours=snapshot.items_last_24_hours,
        recent_timestamps=snapshot.recent_timestamps,
    )
