"""Run one resilient polling scheduler per configured connector.

Each connector's ``SyncScheduler`` runs as a sibling asyncio task with its
own stop signal, state and metrics.  Nothing is shared between connectors.

Usage::

    host = ConnectorHost.from_config(get_connectors_config(), settings)
    host.start()                       # inside a running event loop
    ...
    host.apply_configuration(reload_connectors_config())
    await host.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from src.config import Settings, get_settings
from src.connectors.base import ConnectorConfiguration, SyncOperation
from src.connectors.config_loader import ConnectorsConfig
from src.connectors.metrics import MetricsAggregator
from src.connectors.operations import get_sync_operation
from src.connectors.sync.scheduler import SchedulerOptions, SyncScheduler

logger = logging.getLogger("nocturne.connectors.sync.host")

OperationFactory = Callable[[ConnectorConfiguration, MetricsAggregator], SyncOperation]


def registry_operation_factory(settings: Settings) -> OperationFactory:
    """Build operations from the source registry."""

    def factory(config: ConnectorConfiguration, metrics: MetricsAggregator) -> SyncOperation:
        operation_cls = get_sync_operation(config.source)
        return operation_cls(metrics=metrics, settings=settings)

    return factory


class ConnectorHost:
    """Own the scheduler tasks for every connector in the process."""

    def __init__(
        self,
        settings: Settings | None = None,
        operation_factory: OperationFactory | None = None,
    ) -> None:
        """Initialize an empty host.

        Args:
            settings:          App settings for scheduler defaults.
            operation_factory: Builds a connector's sync operation; defaults
                               to the source registry.
        """
        self._settings = settings or get_settings()
        self._operation_factory = operation_factory or registry_operation_factory(
            self._settings
        )
        self._schedulers: dict[str, SyncScheduler] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(
        cls,
        connectors_config: ConnectorsConfig,
        settings: Settings | None = None,
        operation_factory: OperationFactory | None = None,
    ) -> "ConnectorHost":
        """Create a host with one scheduler per configured connector.

        Connectors whose source has no registered operation are logged and
        skipped rather than failing the whole process.
        """
        host = cls(settings=settings, operation_factory=operation_factory)
        for name in connectors_config.names():
            config = connectors_config.connectors[name]
            try:
                host.add(config)
            except KeyError as exc:
                logger.error("Skipping connector %s: %s", name, exc)
        return host

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add(
        self,
        config: ConnectorConfiguration,
        operation: SyncOperation | None = None,
        options: SchedulerOptions | None = None,
    ) -> SyncScheduler:
        """Register a scheduler for ``config``.

        Raises:
            ValueError: If a connector with the same name already exists.
            KeyError:   If no operation is given and none is registered.
        """
        if config.name in self._schedulers:
            raise ValueError(f"Connector '{config.name}' is already registered")

        metrics = MetricsAggregator()
        scheduler = SyncScheduler(
            config,
            operation=operation or self._operation_factory(config, metrics),
            options=options or SchedulerOptions.from_settings(self._settings, config),
            metrics=metrics,
        )
        self._schedulers[config.name] = scheduler
        logger.debug("Registered connector %s (source=%s)", config.name, config.source)
        return scheduler

    def get(self, name: str) -> SyncScheduler | None:
        return self._schedulers.get(name)

    @property
    def schedulers(self) -> dict[str, SyncScheduler]:
        return dict(self._schedulers)

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start a task per scheduler.  Must be called from a running loop."""
        for name, scheduler in self._schedulers.items():
            if name in self._tasks and not self._tasks[name].done():
                continue
            self._tasks[name] = asyncio.create_task(
                scheduler.run(), name=f"connector-{name}"
            )
        logger.info("ConnectorHost: started %d connector(s)", len(self._tasks))

    async def stop(self, timeout: float | None = None) -> None:
        """Signal every scheduler to stop and wait for the tasks.

        Tasks still running after ``timeout`` seconds are cancelled.
        """
        if not self._tasks:
            return

        if timeout is None:
            timeout = self._settings.shutdown_timeout_seconds

        for scheduler in self._schedulers.values():
            scheduler.stop()

        tasks = list(self._tasks.values())
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.warning("ConnectorHost: %s did not stop in time, cancelling", task.get_name())
            task.cancel()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, Exception):
                logger.error("ConnectorHost: %s crashed: %s", task.get_name(), result)

        self._tasks.clear()
        logger.info("ConnectorHost: all connectors stopped")

    # ------------------------------------------------------------------
    # Hot reload
    # ------------------------------------------------------------------

    def apply_configuration(self, connectors_config: ConnectorsConfig) -> list[str]:
        """Push new configurations into the running schedulers.

        Returns:
            Names of connectors whose configuration changed.
        """
        updated: list[str] = []
        for name, config in connectors_config.connectors.items():
            scheduler = self._schedulers.get(name)
            if scheduler is None:
                logger.warning(
                    "ConnectorHost: connector %s is not running; restart to add it", name
                )
                continue
            if scheduler.config != config:
                scheduler.on_configuration_changed(config)
                updated.append(name)

        for name in self._schedulers:
            if name not in connectors_config.connectors:
                logger.warning(
                    "ConnectorHost: connector %s was removed from config; disable it instead",
                    name,
                )

        logger.info("ConnectorHost: applied configuration to %d connector(s)", len(updated))
        return updated
