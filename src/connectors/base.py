"""Base types shared by every Nocturne connector.

The scheduler, the metrics aggregator and the sync operations all speak in
terms of these types.  Vendor-specific clients live behind the
``SyncOperation`` protocol and never leak their own models into the core.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Data categories
# ---------------------------------------------------------------------------


class SyncDataType(str, Enum):
    """Category of items a connector can publish."""

    GLUCOSE = "glucose"
    TREATMENTS = "treatments"
    PROFILES = "profiles"
    DEVICE_STATUS = "device_status"
    ACTIVITY = "activity"
    FOOD = "food"
    CALIBRATIONS = "calibrations"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ConnectorError(Exception):
    """Base exception for connector failures."""


class NonRetriableSyncError(ConnectorError):
    """Application-level failure that retrying cannot fix."""


class ConnectorAuthError(NonRetriableSyncError):
    """The vendor rejected our credentials."""


class CancelledByTimeout(ConnectorError):
    """An in-flight call was abandoned because its deadline passed."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConnectorConfiguration(BaseModel):
    """Runtime configuration for one connector instance.

    Instances are immutable; a configuration change replaces the whole
    object (see ``SyncScheduler.on_configuration_changed``).

    Attributes:
        name:                  Unique connector name, e.g. ``"dexcom"``.
        source:                Sync operation slug used for registry lookup.
        enabled:               Administrative on/off switch.
        sync_interval_minutes: Polling interval while healthy.
        max_retry_attempts:    Attempts per HTTP call inside one sync.
        endpoint:              Base URL of the vendor API, when applicable.
        api_secret:            Credential passed to the sync operation.
        settings:              Connector-specific extra fields.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=50)
    source: str = Field(min_length=1, max_length=50)
    enabled: bool = True
    sync_interval_minutes: int = Field(default=5, ge=1, le=24 * 60)
    max_retry_attempts: int = Field(default=3, ge=1, le=10)
    endpoint: str | None = None
    api_secret: str | None = Field(default=None, repr=False)
    settings: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Scheduler state
# ---------------------------------------------------------------------------


@dataclass
class ConnectionState:
    """Connection health tracked by a scheduler for its connector.

    ``was_disconnected`` is only cleared by the next successful sync, so it
    can briefly stay ``True`` while ``consecutive_failures`` is already 0.

    Attributes:
        consecutive_failures: Failed sync cycles since the last success.
        was_disconnected:     Set on the first failure after a success.
        last_successful_sync: Watermark used as the backfill start.
        is_in_standby:        True while the connector is disabled.
    """

    consecutive_failures: int = 0
    was_disconnected: bool = False
    last_successful_sync: datetime | None = None
    is_in_standby: bool = False


@dataclass(frozen=True)
class SyncCycleResult:
    """Outcome of one sync cycle."""

    success: bool
    backfill_from: datetime | None
    consecutive_failures: int

    @property
    def is_backfill(self) -> bool:
        return self.backfill_from is not None


class SyncOperation(Protocol):
    """One sync attempt against a vendor API.

    Returns True on success.  ``backfill_from`` is set when the scheduler is
    recovering from an outage and wants data from that watermark forward.
    Implementations should watch ``cancel_event`` and bail out when it is set.
    """

    async def __call__(
        self,
        config: ConnectorConfiguration,
        backfill_from: datetime | None,
        cancel_event: asyncio.Event,
    ) -> bool: ...
