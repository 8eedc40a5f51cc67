"""Shared fixtures and fakes for connector sync tests."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from src.connectors.base import ConnectorConfiguration
from src.connectors.metrics import MetricsAggregator
from src.connectors.sync.scheduler import SchedulerOptions, SyncScheduler

# Canonical test instant (not on an hour boundary)
TEST_NOW = datetime(2026, 2, 23, 12, 30, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: datetime = TEST_NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ScriptedOperation:
    """Sync operation that replays a list of outcomes.

    Each outcome is a bool (returned) or an exception (raised).  Once the
    script runs out, ``default`` is returned.  ``calls`` records the
    ``backfill_from`` argument of every invocation.
    """

    def __init__(
        self,
        outcomes: list[bool | BaseException] | None = None,
        default: bool = True,
        on_call: Callable[[int], None] | None = None,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.default = default
        self.on_call = on_call
        self.calls: list[datetime | None] = []
        self.cancel_events: list[asyncio.Event] = []

    async def __call__(
        self,
        config: ConnectorConfiguration,
        backfill_from: datetime | None,
        cancel_event: asyncio.Event,
    ) -> bool:
        self.calls.append(backfill_from)
        self.cancel_events.append(cancel_event)
        if self.on_call:
            self.on_call(len(self.calls))
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` is true or fail after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


def events(caplog: pytest.LogCaptureFixture) -> list[str]:
    """Return the lifecycle events logged so far, in order."""
    return [r.event for r in caplog.records if hasattr(r, "event")]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def connector_config() -> ConnectorConfiguration:
    return ConnectorConfiguration(name="dexcom", source="dexcom", enabled=True)


@pytest.fixture
def fast_options() -> SchedulerOptions:
    """Intervals short enough for loop tests, with a small fast-poll budget."""
    return SchedulerOptions(
        normal_polling_interval=timedelta(milliseconds=10),
        disconnected_polling_interval=timedelta(milliseconds=10),
        max_fast_poll_attempts=3,
        max_backoff_interval=timedelta(milliseconds=50),
        standby_check_interval=timedelta(milliseconds=10),
    )


@pytest.fixture
def make_scheduler(
    connector_config: ConnectorConfiguration,
    fast_options: SchedulerOptions,
    clock: FakeClock,
) -> Callable[..., SyncScheduler]:
    """Factory building a scheduler around a ScriptedOperation."""

    def _make(
        operation: ScriptedOperation | None = None,
        options: SchedulerOptions | None = None,
        enabled: bool = True,
        metrics: MetricsAggregator | None = None,
    ) -> SyncScheduler:
        config = connector_config.model_copy(update={"enabled": enabled})
        return SyncScheduler(
            config,
            operation=operation or ScriptedOperation(),
            options=options or fast_options,
            metrics=metrics or MetricsAggregator(now=clock),
            now=clock,
        )

    return _make


@pytest.fixture
def capture_events(caplog: pytest.LogCaptureFixture) -> pytest.LogCaptureFixture:
    caplog.set_level(logging.DEBUG)
    return caplog
