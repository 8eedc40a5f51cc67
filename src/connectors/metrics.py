"""Per-connector sync metrics.

Tracks how many items each connector has published, by data type, over its
lifetime and over a rolling 24-hour window, plus the most recent entry
timestamps for the status endpoint.

The 24-hour window is kept as hourly buckets keyed by whole hours since the
Unix epoch, so the aggregator never stores individual events.  Each shared
structure has its own lock and every update holds it for a single add, so
writers from different connectors only contend on the structure they touch.
``reset()`` takes every lock at once.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from src.connectors.base import SyncDataType, as_utc, utc_now

logger = logging.getLogger("nocturne.connectors.metrics")

MAX_RECENT_TIMESTAMPS = 50
WINDOW_HOURS = 24

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def hour_key(timestamp: datetime) -> int:
    """Return the number of whole hours between the Unix epoch and ``timestamp``."""
    delta = as_utc(timestamp) - _EPOCH
    return delta // timedelta(hours=1)


class AtomicTimestamp:
    """A timestamp cell with compare-and-set semantics."""

    def __init__(self) -> None:
        self._value: datetime | None = None
        self._lock = threading.Lock()

    def get(self) -> datetime | None:
        with self._lock:
            return self._value

    def set(self, value: datetime | None) -> None:
        with self._lock:
            self._value = value

    def compare_and_set(self, expected: datetime | None, new: datetime | None) -> datetime | None:
        """Store ``new`` if the current value is ``expected``.

        Returns:
            The value seen before the call; equal to ``expected`` on success.
        """
        with self._lock:
            current = self._value
            if current == expected:
                self._value = new
            return current

    def advance(self, candidate: datetime) -> bool:
        """Move forward to ``candidate`` if it is strictly newer.

        Retries until it wins or a concurrent writer has stored something at
        least as new.  Returns True if ``candidate`` was stored.
        """
        current = self.get()
        while current is None or candidate > current:
            seen = self.compare_and_set(current, candidate)
            if seen == current:
                return True
            current = seen
        return False


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time copy of a connector's metrics."""

    total_items: dict[SyncDataType, int] = field(default_factory=dict)
    items_last_24_hours: dict[SyncDataType, int] = field(default_factory=dict)
    recent_timestamps: list[datetime] = field(default_factory=list)
    last_entry_time: datetime | None = None
    last_sync_time: datetime | None = None

    @property
    def total_entries(self) -> int:
        return sum(self.total_items.values())

    @property
    def entries_last_24_hours(self) -> int:
        return sum(self.items_last_24_hours.values())


class MetricsAggregator:
    """Thread-safe item counters for one connector.

    Usage::

        metrics = MetricsAggregator()
        metrics.track_items(SyncDataType.GLUCOSE, 12, latest_timestamp=newest)
        metrics.track_sync()
        metrics.get_items_last_24_hours(SyncDataType.GLUCOSE)  # 12
    """

    def __init__(self, now: Callable[[], datetime] = utc_now) -> None:
        """Initialize empty counters.

        Args:
            now: Clock returning an aware UTC datetime.  Injected by tests.
        """
        self._now = now

        self._totals: dict[SyncDataType, int] = {}
        self._totals_lock = threading.Lock()

        self._buckets: dict[tuple[SyncDataType, int], int] = {}
        self._buckets_lock = threading.Lock()

        self._recent: deque[datetime] = deque(maxlen=MAX_RECENT_TIMESTAMPS)
        self._recent_lock = threading.Lock()

        self._last_entry = AtomicTimestamp()
        self._last_sync = AtomicTimestamp()

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def track_items(
        self,
        data_type: SyncDataType,
        count: int,
        latest_timestamp: datetime | None = None,
    ) -> None:
        """Record ``count`` newly published items of ``data_type``.

        Args:
            data_type:        Category of the items.
            count:            Number of items; ``<= 0`` is ignored.
            latest_timestamp: Timestamp of the newest item (defaults to now).
        """
        if count <= 0:
            return

        with self._totals_lock:
            self._totals[data_type] = self._totals.get(data_type, 0) + count

        timestamp = as_utc(latest_timestamp) if latest_timestamp is not None else self._now()
        self._last_entry.advance(timestamp)

        with self._recent_lock:
            self._recent.append(timestamp)

        key = (data_type, hour_key(self._now()))
        with self._buckets_lock:
            self._buckets[key] = self._buckets.get(key, 0) + count

        self._prune_buckets()

    def track_entries(self, count: int, latest_timestamp: datetime | None = None) -> None:
        """Record glucose entries (shorthand kept for single-type connectors)."""
        self.track_items(SyncDataType.GLUCOSE, count, latest_timestamp)

    def track_sync(self) -> None:
        self._last_sync.set(self._now())

    def reset(self) -> None:
        """Clear every counter."""
        with self._totals_lock, self._buckets_lock, self._recent_lock:
            self._totals.clear()
            self._buckets.clear()
            self._recent.clear()
            self._last_entry.set(None)
            self._last_sync.set(None)
        logger.info("Connector metrics reset", extra={"event": "metrics_reset"})

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    @property
    def last_entry_time(self) -> datetime | None:
        return self._last_entry.get()

    @property
    def last_sync_time(self) -> datetime | None:
        return self._last_sync.get()

    @property
    def total_entries(self) -> int:
        with self._totals_lock:
            return sum(self._totals.values())

    @property
    def entries_last_24_hours(self) -> int:
        return sum(self.get_items_last_24_hours_breakdown().values())

    def get_total_items(self, data_type: SyncDataType) -> int:
        with self._totals_lock:
            return self._totals.get(data_type, 0)

    def get_total_items_breakdown(self) -> dict[SyncDataType, int]:
        with self._totals_lock:
            return dict(self._totals)

    def get_items_last_24_hours(self, data_type: SyncDataType) -> int:
        cutoff = self._prune_buckets()
        with self._buckets_lock:
            return sum(
                count
                for (bucket_type, key), count in self._buckets.items()
                if bucket_type == data_type and key >= cutoff
            )

    def get_items_last_24_hours_breakdown(self) -> dict[SyncDataType, int]:
        cutoff = self._prune_buckets()
        breakdown: dict[SyncDataType, int] = {}
        with self._buckets_lock:
            for (bucket_type, key), count in self._buckets.items():
                if key >= cutoff:
                    breakdown[bucket_type] = breakdown.get(bucket_type, 0) + count
        return breakdown

    def get_recent_entry_timestamps(self, count: int) -> list[datetime]:
        """Return up to ``count`` most recent entry timestamps, newest first."""
        if count <= 0:
            return []
        with self._recent_lock:
            recent = list(self._recent)
        return sorted(recent, reverse=True)[:count]

    def snapshot(self, recent: int = MAX_RECENT_TIMESTAMPS) -> MetricsSnapshot:
        return MetricsSnapshot(
            total_items=self.get_total_items_breakdown(),
            items_last_24_hours=self.get_items_last_24_hours_breakdown(),
            recent_timestamps=self.get_recent_entry_timestamps(recent),
            last_entry_time=self.last_entry_time,
            last_sync_time=self.last_sync_time,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prune_buckets(self) -> int:
        """Drop buckets older than the window and return the cutoff hour key."""
        cutoff = hour_key(self._now() - timedelta(hours=WINDOW_HOURS))
        with self._buckets_lock:
            stale = [key for key in self._buckets if key[1] < cutoff]
            for key in stale:
                del self._buckets[key]
        return cutoff
