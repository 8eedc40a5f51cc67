"""Nightscout-compatible pull operation.

Fetches glucose entries and treatments from a Nightscout (or compatible)
REST endpoint.  Each HTTP call is wrapped in ``RetryExecutor`` so transient
network trouble is retried within the cycle; anything left over surfaces as
one failed sync cycle for the scheduler to count.

When the scheduler asks for a backfill, data is requested from the backfill
watermark (minus a small overlap) instead of the default lookback.  The
lookback is never older than ``max_lookback_days``.

Records are counted into the connector's ``MetricsAggregator`` and handed
to an optional ``on_records`` callback; parsing and storage belong to the
caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from src.config import Settings, get_settings
from src.connectors.base import (
    ConnectorAuthError,
    ConnectorConfiguration,
    NonRetriableSyncError,
    SyncDataType,
    utc_now,
)
from src.connectors.metrics import MetricsAggregator
from src.connectors.resilience.retry import RetryExecutor

logger = logging.getLogger("nocturne.connectors.operations.nightscout")

T = TypeVar("T")

RecordsCallback = Callable[[str, SyncDataType, list[dict]], Awaitable[None]]

_ENTRIES_PATH = "/api/v1/entries.json"
_TREATMENTS_PATH = "/api/v1/treatments.json"

DEFAULT_LOOKBACK_HOURS = 24
DEFAULT_MAX_LOOKBACK_DAYS = 7
DEFAULT_OVERLAP_MINUTES = 5
DEFAULT_PAGE_SIZE = 500


class SyncAborted(Exception):
    """The scheduler asked us to stop while a request was in flight."""


async def run_until_cancelled(awaitable: Awaitable[T], cancel_event: asyncio.Event) -> T:
    """Await ``awaitable`` unless ``cancel_event`` fires first.

    Raises:
        SyncAborted: If the event was set before the awaitable finished.
    """
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    raise SyncAborted("sync aborted by stop signal")


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse Nightscout ``date`` (epoch ms) or ISO-8601 timestamps."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


class NightscoutSyncOperation:
    """Pull entries and treatments from a Nightscout-compatible API.

    Usage::

        operation = NightscoutSyncOperation(metrics=scheduler.metrics)
        ok = await operation(config, backfill_from=None, cancel_event=stop)
    """

    SOURCE_ID = "nightscout"
    DISPLAY_NAME = "Nightscout"

    # data type, path, query field, timestamp field
    FEEDS: tuple[tuple[SyncDataType, str, str, str], ...] = (
        (SyncDataType.GLUCOSE, _ENTRIES_PATH, "date", "date"),
        (SyncDataType.TREATMENTS, _TREATMENTS_PATH, "created_at", "created_at"),
    )

    def __init__(
        self,
        metrics: MetricsAggregator,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_executor: RetryExecutor | None = None,
        on_records: RecordsCallback | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the operation.

        Args:
            metrics:        Aggregator for the connector this operation serves.
            settings:       App settings (timeouts, retry delay).
            http_client:    Optional pre-configured httpx client (for testing).
            retry_executor: Optional executor; defaults to one named after the source.
            on_records:     Async callback(connector_name, data_type, records).
            now:            UTC clock.
        """
        self._metrics = metrics
        self._settings = settings or get_settings()
        self._http_client = http_client
        self._retry = retry_executor or RetryExecutor(name=self.SOURCE_ID)
        self._on_records = on_records
        self._now = now

    async def __call__(
        self,
        config: ConnectorConfiguration,
        backfill_from: datetime | None,
        cancel_event: asyncio.Event,
    ) -> bool:
        if not config.endpoint:
            raise NonRetriableSyncError(f"{config.name}: no endpoint configured")

        since = self.calculate_since(config, backfill_from)
        logger.debug("%s fetching data since %s", config.name, since.isoformat())

        if self._http_client:
            return await self._sync(self._http_client, config, since, cancel_event)

        async with httpx.AsyncClient(timeout=self._settings.http_timeout_seconds) as client:
            return await self._sync(client, config, since, cancel_event)

    def calculate_since(
        self, config: ConnectorConfiguration, backfill_from: datetime | None
    ) -> datetime:
        """Return the lower bound for this cycle's queries.

        Backfills start ``overlap_minutes`` before the watermark so entries
        that landed during the last sync are not missed.  Either way the
        result is clamped to ``max_lookback_days``.
        """
        opts = config.settings
        now = self._now()
        max_lookback = now - timedelta(
            days=opts.get("max_lookback_days", DEFAULT_MAX_LOOKBACK_DAYS)
        )

        if backfill_from is not None:
            since = backfill_from - timedelta(
                minutes=opts.get("overlap_minutes", DEFAULT_OVERLAP_MINUTES)
            )
        else:
            since = now - timedelta(
                hours=opts.get("default_lookback_hours", DEFAULT_LOOKBACK_HOURS)
            )

        if since < max_lookback:
            logger.info(
                "%s requested window is older than the lookback limit, clamping to %s",
                config.name, max_lookback.isoformat(),
            )
            return max_lookback
        return since

    async def _sync(
        self,
        client: httpx.AsyncClient,
        config: ConnectorConfiguration,
        since: datetime,
        cancel_event: asyncio.Event,
    ) -> bool:
        headers = self._build_headers(config)
        page_size = int(config.settings.get("page_size", DEFAULT_PAGE_SIZE))
        base_url = config.endpoint.rstrip("/")

        for data_type, path, query_field, ts_field in self.FEEDS:
            if cancel_event.is_set():
                return False

            if query_field == "date":
                bound: Any = int(since.timestamp() * 1000)
            else:
                bound = since.isoformat()
            params = {f"find[{query_field}][$gte]": bound, "count": page_size}
            url = f"{base_url}{path}"

            async def fetch() -> list[dict]:
                return await self._get(client, url, params, headers)

            try:
                records = await run_until_cancelled(
                    self._retry.execute_with_retry(
                        fetch,
                        max_attempts=config.max_retry_attempts,
                        base_delay=self._settings.retry_base_delay_seconds,
                        attempt_timeout=self._settings.sync_attempt_deadline_seconds,
                    ),
                    cancel_event,
                )
            except SyncAborted:
                logger.info("%s sync aborted during %s fetch", config.name, data_type.value)
                return False

            timestamps = [t for t in (_parse_timestamp(r.get(ts_field)) for r in records) if t]
            self._metrics.track_items(
                data_type, len(records), max(timestamps) if timestamps else None
            )
            if records and self._on_records:
                await self._on_records(config.name, data_type, records)

            logger.debug(
                "%s fetched %d %s records", config.name, len(records), data_type.value
            )

        return True

    def _build_headers(self, config: ConnectorConfiguration) -> dict[str, str]:
        """Nightscout expects the SHA-1 hex digest of the API secret."""
        headers = {"Accept": "application/json"}
        if config.api_secret:
            headers["api-secret"] = hashlib.sha1(config.api_secret.encode()).hexdigest()
        return headers

    async def _get(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: dict,
        headers: dict[str, str],
    ) -> list[dict]:
        """GET a Nightscout collection.

        Raises:
            ConnectorAuthError:    On 401/403.
            httpx.HTTPStatusError: On other non-2xx responses.
            NonRetriableSyncError: If the body is not a JSON array.
        """
        response = await client.get(url, params=params, headers=headers)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in (401, 403):
                raise ConnectorAuthError(
                    f"{self.DISPLAY_NAME} rejected credentials ({exc.response.status_code})"
                ) from exc
            raise

        data = response.json()
        if not isinstance(data, list):
            raise NonRetriableSyncError(f"Unexpected response shape from {url}")
        return [r for r in data if isinstance(r, dict)]
