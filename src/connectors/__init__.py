"""Nocturne connector sync core.

This package schedules, retries and measures the periodic sync of glucose,
pump and diet data from third-party cloud APIs.  Talking to a vendor is left
to pluggable sync operations; this package decides *when* to call them.

Subpackages:
    resilience/ — Backoff calculator and classified retry executor
    sync/       — Resilient polling scheduler and multi-connector host
    operations/ — Sync operation registry and bundled operations

Core modules:
    base          — Shared types, connector configuration, error hierarchy
    metrics       — Thread-safe per-connector item counters
    health        — Connector health derived from scheduler state
    config_loader — Load/validate/hot-reload connectors.yaml
"""

from src.connectors.base import (
    ConnectionState,
    ConnectorConfiguration,
    SyncCycleResult,
    SyncDataType,
    SyncOperation,
)
from src.connectors.config_loader import ConnectorsConfig, get_connectors_config
from src.connectors.metrics import MetricsAggregator

__all__ = [
    "ConnectionState",
    "ConnectorConfiguration",
    "SyncCycleResult",
    "SyncDataType",
    "SyncOperation",
    "ConnectorsConfig",
    "get_connectors_config",
    "MetricsAggregator",
]
