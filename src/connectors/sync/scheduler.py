"""Resilient polling scheduler for one connector.

Each connector gets its own ``SyncScheduler`` running as a long-lived asyncio
task.  The loop adapts its polling interval to connection health:

    Healthy   (0 failures)              → normal interval (e.g. 5 minutes)
    FastPoll  (1..max_fast_poll_attempts) → disconnected interval (10 seconds)
    Backoff   (beyond that)             → 10s * 1.5^n, n capped at 10,
                                          never above max_backoff_interval

After a failure streak the next successful cycle asks the sync operation to
backfill from the last successful sync.  A disabled connector parks in
standby and re-checks its enabled flag every ``standby_check_interval``.

Cycles for one connector never overlap: the next one is only scheduled after
the previous one returns.

Usage::

    scheduler = SyncScheduler(config, operation=nightscout_sync)
    task = asyncio.create_task(scheduler.run())
    ...
    scheduler.stop()
    await task
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from src.config import Settings
from src.connectors.base import (
    ConnectionState,
    ConnectorConfiguration,
    SyncCycleResult,
    SyncOperation,
    utc_now,
)
from src.connectors.metrics import MetricsAggregator

logger = logging.getLogger("nocturne.connectors.sync.scheduler")

BACKOFF_GROWTH = 1.5
MAX_BACKOFF_EXPONENT = 10


@dataclass(frozen=True)
class SchedulerOptions:
    """Polling intervals and thresholds for one scheduler.

    Attributes:
        normal_polling_interval:       Delay between cycles while healthy.
        disconnected_polling_interval: Delay during the fast-poll phase.
        max_fast_poll_attempts:        Failures tolerated before backing off.
        max_backoff_interval:          Ceiling for the backoff phase.
        standby_check_interval:        How often standby re-reads ``enabled``.
    """

    normal_polling_interval: timedelta = timedelta(minutes=5)
    disconnected_polling_interval: timedelta = timedelta(seconds=10)
    max_fast_poll_attempts: int = 30
    max_backoff_interval: timedelta = timedelta(minutes=5)
    standby_check_interval: timedelta = timedelta(seconds=30)

    @classmethod
    def from_settings(
        cls, settings: Settings, config: ConnectorConfiguration
    ) -> "SchedulerOptions":
        return cls(
            normal_polling_interval=timedelta(minutes=config.sync_interval_minutes),
            disconnected_polling_interval=timedelta(
                seconds=settings.disconnected_polling_interval_seconds
            ),
            max_fast_poll_attempts=settings.max_fast_poll_attempts,
            max_backoff_interval=timedelta(seconds=settings.max_backoff_interval_seconds),
            standby_check_interval=timedelta(
                seconds=settings.standby_check_interval_seconds
            ),
        )


class SyncScheduler:
    """Adaptive polling loop for a single connector.

    Connector-specific behavior is injected as a ``SyncOperation``; the
    scheduler itself only decides *when* to call it and tracks the outcome.
    """

    def __init__(
        self,
        config: ConnectorConfiguration,
        operation: SyncOperation,
        options: SchedulerOptions | None = None,
        metrics: MetricsAggregator | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the scheduler.

        Args:
            config:    Initial connector configuration.
            operation: Async callable performing one sync attempt.
            options:   Polling intervals; defaults derive from ``config``.
            metrics:   Aggregator to report into (one per connector).
            now:       UTC clock.  Injected by tests.
        """
        self._config = config
        self._config_lock = threading.Lock()
        self._operation = operation
        self._options = options or SchedulerOptions(
            normal_polling_interval=timedelta(minutes=config.sync_interval_minutes)
        )
        self._metrics = metrics or MetricsAggregator(now=now)
        self._now = now
        self._name = config.name
        self._state = ConnectionState()
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def connector_name(self) -> str:
        return self._name

    @property
    def options(self) -> SchedulerOptions:
        return self._options

    @property
    def metrics(self) -> MetricsAggregator:
        return self._metrics

    @property
    def state(self) -> ConnectionState:
        """A copy of the current connection state."""
        return dataclasses.replace(self._state)

    @property
    def is_in_standby(self) -> bool:
        return self._state.is_in_standby

    @property
    def config(self) -> ConnectorConfiguration:
        with self._config_lock:
            return self._config

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def on_configuration_changed(self, new_config: ConnectorConfiguration) -> None:
        """Replace the configuration.  Safe to call from any thread."""
        with self._config_lock:
            self._config = new_config
        logger.info(
            "%s configuration updated at runtime (enabled=%s)",
            self._name, new_config.enabled,
            extra=self._extra("config_changed"),
        )
        if new_config.enabled:
            self._wake()

    def _wake(self) -> None:
        """Cut a standby wait short.  Called after the config lock is released."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wake_event.set()
        else:
            loop.call_soon_threadsafe(self._wake_event.set)

    def is_enabled(self) -> bool:
        with self._config_lock:
            return self._config.enabled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Signal the loop to exit.  Wakes any pending sleep immediately."""
        self._stop_event.set()

    @property
    def is_stopping(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        """Poll until ``stop()`` is called or the task is cancelled.

        Raises:
            asyncio.CancelledError: Re-raised after logging a clean stop.
            Exception: Anything escaping the loop's own bookkeeping.
        """
        self._loop = asyncio.get_running_loop()
        logger.info(
            "%s resilient polling started (normal interval %s)",
            self._name, self._options.normal_polling_interval,
            extra=self._extra("scheduler_started"),
        )

        try:
            while not self._stop_event.is_set():
                if not self.is_enabled():
                    await self._wait_for_enable()
                    if self._stop_event.is_set():
                        break

                # Entering (or re-entering) Active: sync right away.
                await self.run_sync_cycle()

                while not self._stop_event.is_set() and self.is_enabled():
                    delay = self.next_poll_interval()
                    logger.debug(
                        "%s next poll in %s (failures: %d)",
                        self._name, delay, self._state.consecutive_failures,
                    )
                    if await self._sleep(delay):
                        break
                    await self.run_sync_cycle()

        except asyncio.CancelledError:
            logger.info(
                "%s resilient polling cancelled",
                self._name,
                extra=self._extra("scheduler_cancelled"),
            )
            raise
        except Exception:
            logger.exception(
                "%s unexpected error in resilient polling loop",
                self._name,
                extra=self._extra("scheduler_crashed"),
            )
            raise
        finally:
            logger.info(
                "%s resilient polling stopped",
                self._name,
                extra=self._extra("scheduler_stopped"),
            )

    async def _wait_for_enable(self) -> None:
        """Park in standby until re-enabled or stopped."""
        self._wake_event.clear()
        self._state.is_in_standby = True
        logger.info(
            "%s connector is disabled, entering standby",
            self._name,
            extra=self._extra("standby_entered"),
        )

        while not self._stop_event.is_set() and not self.is_enabled():
            if await self._standby_sleep(self._options.standby_check_interval):
                return
            logger.debug("%s standby - waiting for enable signal", self._name)

        if self._stop_event.is_set():
            return

        self._state.is_in_standby = False
        logger.info(
            "%s connector re-enabled, resuming polling",
            self._name,
            extra=self._extra("standby_exited"),
        )

    async def _sleep(self, delay: timedelta) -> bool:
        """Sleep for ``delay``; return True if woken by ``stop()``."""
        if self._stop_event.is_set():
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay.total_seconds())
        except asyncio.TimeoutError:
            return False
        return True

    async def _standby_sleep(self, delay: timedelta) -> bool:
        """Like ``_sleep`` but also returns early when the connector is enabled."""
        if self._stop_event.is_set():
            return True
        stop = asyncio.ensure_future(self._stop_event.wait())
        wake = asyncio.ensure_future(self._wake_event.wait())
        try:
            await asyncio.wait(
                {stop, wake},
                timeout=delay.total_seconds(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop.cancel()
            wake.cancel()
        self._wake_event.clear()
        return self._stop_event.is_set()

    # ------------------------------------------------------------------
    # Polling policy
    # ------------------------------------------------------------------

    def next_poll_interval(self) -> timedelta:
        """Return the delay before the next cycle given current health."""
        failures = self._state.consecutive_failures
        opts = self._options

        if failures == 0:
            return opts.normal_polling_interval

        if failures <= opts.max_fast_poll_attempts:
            return opts.disconnected_polling_interval

        exponent = min(failures - opts.max_fast_poll_attempts, MAX_BACKOFF_EXPONENT)
        backoff = min(
            opts.disconnected_polling_interval * BACKOFF_GROWTH**exponent,
            opts.max_backoff_interval,
        )
        logger.debug(
            "%s extended outage, using backoff interval %s", self._name, backoff
        )
        return backoff

    # ------------------------------------------------------------------
    # One sync cycle
    # ------------------------------------------------------------------

    async def run_sync_cycle(self) -> SyncCycleResult:
        """Run the sync operation once and fold the outcome into the state.

        Exceptions raised by the operation count as a failed cycle and never
        escape.  Cancellation does.
        """
        state = self._state
        is_backfill = state.was_disconnected and state.last_successful_sync is not None
        backfill_from = state.last_successful_sync if is_backfill else None

        logger.debug(
            "%s starting data sync cycle",
            self._name,
            extra=self._extra("sync_cycle_started"),
        )
        if is_backfill:
            logger.info(
                "%s performing backfill from %s UTC",
                self._name, backfill_from,
                extra=self._extra("backfill_started"),
            )

        try:
            success = bool(
                await self._operation(self.config, backfill_from, self._stop_event)
            )
        except Exception as exc:
            logger.error(
                "%s error during data sync cycle: %s",
                self._name, exc,
                exc_info=True,
                extra=self._extra("sync_error"),
            )
            success = False

        self._metrics.track_sync()

        if success:
            self._handle_success()
        else:
            self._handle_failure()

        return SyncCycleResult(
            success=success,
            backfill_from=backfill_from,
            consecutive_failures=state.consecutive_failures,
        )

    def _handle_success(self) -> None:
        state = self._state
        if state.consecutive_failures > 0:
            logger.info(
                "%s connection restored after %d failed attempts",
                self._name, state.consecutive_failures,
                extra=self._extra("connection_restored"),
            )

        state.last_successful_sync = self._now()
        state.was_disconnected = False
        state.consecutive_failures = 0

        logger.info(
            "%s data sync completed successfully",
            self._name,
            extra=self._extra("sync_succeeded"),
        )

    def _handle_failure(self) -> None:
        state = self._state
        state.consecutive_failures += 1

        if state.consecutive_failures == 1:
            state.was_disconnected = True
            logger.warning(
                "%s connection lost, switching to fast polling (%ss)",
                self._name, self._options.disconnected_polling_interval.total_seconds(),
                extra=self._extra("connection_degraded"),
            )
        elif state.consecutive_failures == self._options.max_fast_poll_attempts:
            logger.warning(
                "%s extended outage detected (%d failures), switching to backoff",
                self._name, state.consecutive_failures,
                extra=self._extra("extended_outage"),
            )
        else:
            logger.warning(
                "%s data sync failed (attempt %d)",
                self._name, state.consecutive_failures,
                extra=self._extra("sync_failed"),
            )

    def _extra(self, event: str) -> dict[str, str]:
        return {"event": event, "connector": self._name}
