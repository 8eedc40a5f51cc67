"""Exponential backoff with a ceiling and optional jitter.

For sync operations that want a jittered per-call retry budget.  The
scheduler's reconnect curve (base 1.5, keyed on failed cycles) lives in
``src.connectors.sync.scheduler`` and does not use this module.

Usage::

    calc = BackoffCalculator(BackoffConfig(base_interval_ms=1000, max_retries=5))
    if calc.should_retry(attempt):
        await asyncio.sleep(calc.delay(attempt).total_seconds())
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import timedelta

JITTER_FRACTION = 0.25


@dataclass(frozen=True)
class BackoffConfig:
    """Immutable backoff parameters.

    Attributes:
        base_interval_ms: Delay for attempt 0 before growth.
        max_retries:      Attempts at or beyond this sit at the ceiling.
        exponential_base: Growth factor per attempt.
        max_delay_ms:     Ceiling applied before jitter.
        use_jitter:       Perturb delays by up to ±25%.
    """

    base_interval_ms: float
    max_retries: int
    exponential_base: float = 2.0
    max_delay_ms: float = 300_000
    use_jitter: bool = True

    def __post_init__(self) -> None:
        if self.base_interval_ms < 0:
            raise ValueError("base_interval_ms must be >= 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.exponential_base < 1.0:
            raise ValueError("exponential_base must be >= 1.0")
        if self.max_delay_ms < 0:
            raise ValueError("max_delay_ms must be >= 0")


class BackoffCalculator:
    """Map an attempt number to a retry delay.

    Stateless apart from the random source, so one instance can be shared
    across tasks.  With jitter on, equal inputs give equal *distributions*,
    not equal values.
    """

    def __init__(self, config: BackoffConfig, rng: random.Random | None = None) -> None:
        self._config = config
        self._rng = rng or random.Random()

    @property
    def config(self) -> BackoffConfig:
        return self._config

    def delay_ms(self, attempt: int) -> float:
        """Return the delay in milliseconds for a zero-based ``attempt``.

        Raises:
            ValueError: If ``attempt`` is negative.
        """
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")

        cfg = self._config
        if attempt >= cfg.max_retries:
            return float(cfg.max_delay_ms)

        try:
            exponential = cfg.base_interval_ms * cfg.exponential_base**attempt
        except OverflowError:
            exponential = float("inf")
        capped = min(exponential, cfg.max_delay_ms)

        if not cfg.use_jitter:
            return float(capped)

        jitter = capped * JITTER_FRACTION * (self._rng.random() * 2 - 1)
        return max(0.0, capped + jitter)

    def delay(self, attempt: int) -> timedelta:
        return timedelta(milliseconds=self.delay_ms(attempt))

    def should_retry(self, attempt: int) -> bool:
        return attempt < self._config.max_retries
