"""Tests for the Nightscout sync operation and the operation registry."""

from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from src.config import Settings
from src.connectors.base import (
    CancelledByTimeout,
    ConnectorAuthError,
    ConnectorConfiguration,
    NonRetriableSyncError,
    SyncDataType,
)
from src.connectors.metrics import MetricsAggregator
from src.connectors.operations import (
    OPERATION_REGISTRY,
    NightscoutSyncOperation,
    get_sync_operation,
    register_sync_operation,
)
from src.connectors.operations.nightscout import (
    SyncAborted,
    _parse_timestamp,
    run_until_cancelled,
)
from src.connectors.resilience.retry import RetryExecutor
from src.connectors.tests.conftest import TEST_NOW, FakeClock

ENDPOINT = "https://ns.example.com"

NEWEST_ENTRY = TEST_NOW - timedelta(minutes=2)

ENTRIES = [
    {"sgv": 120, "date": int(NEWEST_ENTRY.timestamp() * 1000), "type": "sgv"},
    {"sgv": 118, "date": int((NEWEST_ENTRY - timedelta(minutes=5)).timestamp() * 1000)},
]
TREATMENTS = [
    {"eventType": "Meal Bolus", "insulin": 3.5, "created_at": "2026-02-23T11:00:00.000Z"},
]


class FakeNightscout:
    """httpx MockTransport handler serving canned collections."""

    def __init__(self, entries: list | None = None, treatments: list | None = None) -> None:
        self.entries = ENTRIES if entries is None else entries
        self.treatments = TREATMENTS if treatments is None else treatments
        self.requests: list[httpx.Request] = []
        self.failures: list[int] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            return httpx.Response(self.failures.pop(0))
        if request.url.path == "/api/v1/entries.json":
            return httpx.Response(200, json=self.entries)
        if request.url.path == "/api/v1/treatments.json":
            return httpx.Response(200, json=self.treatments)
        return httpx.Response(404)


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def server() -> FakeNightscout:
    return FakeNightscout()


@pytest.fixture
def metrics(clock: FakeClock) -> MetricsAggregator:
    return MetricsAggregator(now=clock)


@pytest.fixture
def ns_config() -> ConnectorConfiguration:
    return ConnectorConfiguration(
        name="nightscout",
        source="nightscout",
        endpoint=ENDPOINT + "/",
        api_secret="correct horse battery staple",
        max_retry_attempts=3,
        settings={"page_size": 100},
    )


@pytest.fixture
def make_operation(server: FakeNightscout, metrics: MetricsAggregator, clock: FakeClock):
    def _make(**kwargs) -> NightscoutSyncOperation:
        client = httpx.AsyncClient(transport=httpx.MockTransport(server))
        return NightscoutSyncOperation(
            metrics=metrics,
            settings=Settings(),
            http_client=client,
            retry_executor=RetryExecutor(sleep=_no_sleep, name="nightscout"),
            now=clock,
            **kwargs,
        )

    return _make


class TestSync:
    @pytest.mark.asyncio
    async def test_counts_records_by_type(
        self, make_operation, ns_config: ConnectorConfiguration, metrics: MetricsAggregator
    ) -> None:
        ok = await make_operation()(ns_config, None, asyncio.Event())

        assert ok
        assert metrics.get_total_items_breakdown() == {
            SyncDataType.GLUCOSE: 2,
            SyncDataType.TREATMENTS: 1,
        }
        assert metrics.last_entry_time == NEWEST_ENTRY

    @pytest.mark.asyncio
    async def test_request_shape(
        self, make_operation, ns_config: ConnectorConfiguration, server: FakeNightscout
    ) -> None:
        await make_operation()(ns_config, None, asyncio.Event())

        entries_req, treatments_req = server.requests
        since = TEST_NOW - timedelta(hours=24)
        assert entries_req.url.path == "/api/v1/entries.json"
        assert entries_req.url.params["find[date][$gte]"] == str(int(since.timestamp() * 1000))
        assert entries_req.url.params["count"] == "100"
        assert treatments_req.url.params["find[created_at][$gte]"] == since.isoformat()

        expected = hashlib.sha1(b"correct horse battery staple").hexdigest()
        assert entries_req.headers["api-secret"] == expected

    @pytest.mark.asyncio
    async def test_backfill_starts_before_watermark(
        self, make_operation, ns_config: ConnectorConfiguration, server: FakeNightscout
    ) -> None:
        watermark = TEST_NOW - timedelta(hours=2)
        await make_operation()(ns_config, watermark, asyncio.Event())

        expected = watermark - timedelta(minutes=5)
        assert server.requests[0].url.params["find[date][$gte]"] == str(
            int(expected.timestamp() * 1000)
        )

    @pytest.mark.asyncio
    async def test_records_callback(
        self, make_operation, ns_config: ConnectorConfiguration
    ) -> None:
        received: list[tuple[str, SyncDataType, int]] = []

        async def on_records(name: str, data_type: SyncDataType, records: list[dict]) -> None:
            received.append((name, data_type, len(records)))

        await make_operation(on_records=on_records)(ns_config, None, asyncio.Event())
        assert received == [
            ("nightscout", SyncDataType.GLUCOSE, 2),
            ("nightscout", SyncDataType.TREATMENTS, 1),
        ]

    @pytest.mark.asyncio
    async def test_empty_collections_are_a_success(
        self, ns_config: ConnectorConfiguration, metrics: MetricsAggregator, clock: FakeClock
    ) -> None:
        server = FakeNightscout(entries=[], treatments=[])
        operation = NightscoutSyncOperation(
            metrics=metrics,
            settings=Settings(),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(server)),
            now=clock,
        )
        assert await operation(ns_config, None, asyncio.Event())
        assert metrics.total_entries == 0

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(
        self, make_operation, ns_config: ConnectorConfiguration, server: FakeNightscout
    ) -> None:
        server.failures = [503, 502]
        assert await make_operation()(ns_config, None, asyncio.Event())
        # two failed attempts + entries + treatments
        assert len(server.requests) == 4

    @pytest.mark.asyncio
    async def test_stalled_request_is_abandoned_at_deadline(
        self, ns_config: ConnectorConfiguration, metrics: MetricsAggregator, clock: FakeClock
    ) -> None:
        server = FakeNightscout()

        async def stalled(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(60)
            return server(request)

        operation = NightscoutSyncOperation(
            metrics=metrics,
            settings=Settings(sync_attempt_deadline_seconds=0.01),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(stalled)),
            retry_executor=RetryExecutor(sleep=_no_sleep, name="nightscout"),
            now=clock,
        )
        with pytest.raises(CancelledByTimeout):
            await asyncio.wait_for(operation(ns_config, None, asyncio.Event()), timeout=2)
        assert metrics.total_entries == 0

    @pytest.mark.asyncio
    async def test_auth_failure_is_not_retried(
        self, make_operation, ns_config: ConnectorConfiguration, server: FakeNightscout
    ) -> None:
        server.failures = [401]
        with pytest.raises(ConnectorAuthError, match="Nightscout rejected credentials"):
            await make_operation()(ns_config, None, asyncio.Event())
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_unexpected_body_is_rejected(
        self, make_operation, ns_config: ConnectorConfiguration
    ) -> None:
        server = FakeNightscout(entries={"status": "ok"})  # type: ignore[arg-type]
        operation = NightscoutSyncOperation(
            metrics=MetricsAggregator(),
            settings=Settings(),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(server)),
        )
        with pytest.raises(NonRetriableSyncError):
            await operation(ns_config, None, asyncio.Event())

    @pytest.mark.asyncio
    async def test_missing_endpoint(
        self, make_operation, ns_config: ConnectorConfiguration
    ) -> None:
        config = ns_config.model_copy(update={"endpoint": None})
        with pytest.raises(NonRetriableSyncError, match="no endpoint"):
            await make_operation()(config, None, asyncio.Event())

    @pytest.mark.asyncio
    async def test_stop_signal_skips_remaining_feeds(
        self, make_operation, ns_config: ConnectorConfiguration, server: FakeNightscout
    ) -> None:
        stop = asyncio.Event()
        stop.set()
        assert not await make_operation()(ns_config, None, stop)
        assert server.requests == []


class TestCalculateSince:
    def test_default_lookback(self, make_operation, ns_config: ConnectorConfiguration) -> None:
        assert make_operation().calculate_since(ns_config, None) == TEST_NOW - timedelta(hours=24)

    def test_backfill_overlap(self, make_operation, ns_config: ConnectorConfiguration) -> None:
        watermark = TEST_NOW - timedelta(hours=3)
        assert make_operation().calculate_since(ns_config, watermark) == watermark - timedelta(
            minutes=5
        )

    def test_clamped_to_max_lookback(
        self, make_operation, ns_config: ConnectorConfiguration
    ) -> None:
        ancient = TEST_NOW - timedelta(days=30)
        assert make_operation().calculate_since(ns_config, ancient) == TEST_NOW - timedelta(days=7)

    def test_connector_settings_override(
        self, make_operation, ns_config: ConnectorConfiguration
    ) -> None:
        config = ns_config.model_copy(
            update={"settings": {"default_lookback_hours": 6, "max_lookback_days": 1}}
        )
        operation = make_operation()
        assert operation.calculate_since(config, None) == TEST_NOW - timedelta(hours=6)
        assert operation.calculate_since(
            config, TEST_NOW - timedelta(days=3)
        ) == TEST_NOW - timedelta(days=1)


class TestRunUntilCancelled:
    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        async def work() -> int:
            return 42

        assert await run_until_cancelled(work(), asyncio.Event()) == 42

    @pytest.mark.asyncio
    async def test_aborts_when_event_fires(self) -> None:
        stop = asyncio.Event()
        cancelled = asyncio.Event()

        async def hang() -> None:
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        asyncio.get_running_loop().call_later(0.01, stop.set)
        with pytest.raises(SyncAborted):
            await asyncio.wait_for(run_until_cancelled(hang(), stop), timeout=1)
        assert cancelled.is_set()


class TestRegistry:
    def test_nightscout_registered(self) -> None:
        assert get_sync_operation("nightscout") is NightscoutSyncOperation

    def test_unknown_source(self) -> None:
        with pytest.raises(KeyError, match="Available"):
            get_sync_operation("carelink")

    def test_register_decorator(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            "src.connectors.operations.OPERATION_REGISTRY", dict(OPERATION_REGISTRY)
        )

        @register_sync_operation("glooko")
        class GlookoSyncOperation:
            def __init__(self, metrics, settings=None) -> None:
                self.metrics = metrics

        assert get_sync_operation("glooko") is GlookoSyncOperation


class TestParseTimestamp:
    def test_iso_and_garbage(self) -> None:
        assert _parse_timestamp("2026-02-23T11:00:00.000Z") == datetime(
            2026, 2, 23, 11, tzinfo=timezone.utc
        )
        assert _parse_timestamp("garbage") is None
        assert _parse_timestamp(None) is None
