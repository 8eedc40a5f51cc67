"""Bounded retries for a single async operation.

Whether a failure is worth retrying is decided by an explicit, ordered
classification table rather than by scattered ``except`` clauses.  Retrying
a non-idempotent call by accident is a correctness bug, so anything the table
does not recognise is classified ``UNKNOWN`` and is not retried.

Usage::

    executor = RetryExecutor()
    payload = await executor.execute_with_retry(
        lambda: client.get_json("/api/v1/entries.json"),
        max_attempts=3,
        base_delay=timedelta(seconds=2),
    )
"""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable, TypeVar, Union, cast

import httpx

from src.connectors.base import CancelledByTimeout, NonRetriableSyncError

logger = logging.getLogger("nocturne.connectors.resilience.retry")

T = TypeVar("T")


class FailureKind(str, Enum):
    """Closed set of failure categories."""

    TRANSIENT_IO = "transient_io"
    TIMEOUT = "timeout"
    CANCELLED_BY_TIMEOUT = "cancelled_by_timeout"
    TRANSPORT = "transport"
    APPLICATION = "application"
    UNKNOWN = "unknown"


RETRIABLE_KINDS = frozenset(
    {
        FailureKind.TRANSIENT_IO,
        FailureKind.TIMEOUT,
        FailureKind.CANCELLED_BY_TIMEOUT,
        FailureKind.TRANSPORT,
    }
)

RETRIABLE_STATUS_CODES = frozenset({408, 429})


def is_retriable(kind: FailureKind) -> bool:
    return kind in RETRIABLE_KINDS


def _classify_http_status(exc: BaseException) -> FailureKind:
    """5xx, 408 and 429 are the server's problem; other 4xx are ours."""
    status = cast(httpx.HTTPStatusError, exc).response.status_code
    if status >= 500 or status in RETRIABLE_STATUS_CODES:
        return FailureKind.TRANSIENT_IO
    return FailureKind.APPLICATION


NETWORK_ERRNOS = frozenset(
    {
        errno.ENETUNREACH,
        errno.EHOSTUNREACH,
        errno.ENETDOWN,
        errno.ETIMEDOUT,
        errno.ECONNABORTED,
    }
)


def _classify_os_error(exc: BaseException) -> FailureKind:
    """Socket-level errnos are transient; filesystem and permission errors are not."""
    if cast(OSError, exc).errno in NETWORK_ERRNOS:
        return FailureKind.TRANSIENT_IO
    return FailureKind.UNKNOWN


Rule = tuple[type[BaseException], Union[FailureKind, Callable[[BaseException], FailureKind]]]

# First match wins.  httpx.TimeoutException subclasses TransportError, so
# timeouts must come before the transport rule.  TimeoutError and
# ConnectionError are OSError subclasses, so the errno rule goes last.
DEFAULT_RULES: tuple[Rule, ...] = (
    (NonRetriableSyncError, FailureKind.APPLICATION),
    (CancelledByTimeout, FailureKind.CANCELLED_BY_TIMEOUT),
    (httpx.TimeoutException, FailureKind.TIMEOUT),
    (TimeoutError, FailureKind.TIMEOUT),
    (asyncio.TimeoutError, FailureKind.TIMEOUT),
    (httpx.HTTPStatusError, _classify_http_status),
    (httpx.TransportError, FailureKind.TRANSPORT),
    (socket.gaierror, FailureKind.TRANSPORT),
    (ConnectionError, FailureKind.TRANSIENT_IO),
    (OSError, _classify_os_error),
)


class FailureClassifier:
    """Ordered exception-type → ``FailureKind`` table."""

    def __init__(self, rules: tuple[Rule, ...] = DEFAULT_RULES) -> None:
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[Rule, ...]:
        return self._rules

    def with_rule(
        self,
        exc_type: type[BaseException],
        kind: FailureKind | Callable[[BaseException], FailureKind],
    ) -> "FailureClassifier":
        """Return a new classifier with ``exc_type`` checked before existing rules."""
        return FailureClassifier(((exc_type, kind),) + self._rules)

    def classify(self, exc: BaseException) -> FailureKind:
        for exc_type, kind in self._rules:
            if isinstance(exc, exc_type):
                return kind(exc) if callable(kind) else kind
        return FailureKind.UNKNOWN

    def is_retriable(self, exc: BaseException) -> bool:
        return is_retriable(self.classify(exc))


DEFAULT_CLASSIFIER = FailureClassifier()


def classify_failure(exc: BaseException) -> FailureKind:
    return DEFAULT_CLASSIFIER.classify(exc)


@dataclass
class RetryContext:
    """Per-call retry bookkeeping.

    Attributes:
        attempt:    One-based index of the attempt in progress.
        last_error: Most recent retriable failure.
        wait:       Delay computed before the next attempt.
    """

    attempt: int = 0
    last_error: BaseException | None = None
    wait: timedelta = timedelta(0)


class RetryExecutor:
    """Run an async operation with bounded, classified retries.

    Waits grow as ``base_delay * 2 ** (attempt - 1)`` with no jitter.  The
    last attempt is unconditional: whatever it raises propagates.
    """

    def __init__(
        self,
        classifier: FailureClassifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "connector",
    ) -> None:
        """Initialize the executor.

        Args:
            classifier: Failure table; defaults to ``DEFAULT_CLASSIFIER``.
            sleep:      Async sleep function (seconds).  Injected by tests.
            name:       Label used in log lines.
        """
        self._classifier = classifier or DEFAULT_CLASSIFIER
        self._sleep = sleep
        self._name = name

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int = 3,
        base_delay: timedelta | float = timedelta(seconds=2),
        attempt_timeout: timedelta | float | None = None,
    ) -> T:
        """Await ``operation`` up to ``max_attempts`` times.

        Args:
            operation:    Zero-argument callable returning an awaitable.
            max_attempts: Total attempts including the first.
            base_delay:   Wait before the second attempt (timedelta or seconds).
            attempt_timeout: Deadline for each attempt; an attempt still running
                when it passes is cancelled and counts as a
                ``CancelledByTimeout`` failure.

        Returns:
            The first successful result.

        Raises:
            ValueError: If ``max_attempts`` is less than 1.
            Exception:  The non-retriable error, or the last attempt's error.
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        if not isinstance(base_delay, timedelta):
            base_delay = timedelta(seconds=base_delay)
        if attempt_timeout is not None and not isinstance(attempt_timeout, timedelta):
            attempt_timeout = timedelta(seconds=attempt_timeout)

        ctx = RetryContext()

        for attempt in range(1, max_attempts):
            ctx.attempt = attempt
            try:
                return await self._attempt(operation, attempt_timeout)
            except Exception as exc:
                kind = self._classifier.classify(exc)
                if not is_retriable(kind):
                    logger.warning(
                        "%s attempt %d/%d failed with non-retriable %s error: %s",
                        self._name, attempt, max_attempts, kind.value, exc,
                        extra={"event": "retry_aborted", "connector": self._name},
                    )
                    raise

                ctx.last_error = exc
                ctx.wait = base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.0fms",
                    self._name, attempt, max_attempts, kind.value,
                    ctx.wait.total_seconds() * 1000,
                    extra={"event": "retry_scheduled", "connector": self._name},
                )
                await self._sleep(ctx.wait.total_seconds())

        ctx.attempt = max_attempts
        try:
            return await self._attempt(operation, attempt_timeout)
        except Exception as exc:
            logger.error(
                "%s: all %d attempts failed, last error: %s",
                self._name, max_attempts, exc,
                extra={"event": "retry_exhausted", "connector": self._name},
            )
            raise

    async def _attempt(
        self, operation: Callable[[], Awaitable[T]], deadline: timedelta | None
    ) -> T:
        if deadline is None:
            return await operation()

        task = asyncio.ensure_future(operation())
        try:
            done, _ = await asyncio.wait({task}, timeout=deadline.total_seconds())
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()

        task.cancel()
        await asyncio.wait({task})
        raise CancelledByTimeout(
            f"{self._name} attempt abandoned after {deadline.total_seconds():g}s deadline"
        )
