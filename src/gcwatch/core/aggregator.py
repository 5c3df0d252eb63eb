"""Windowed aggregation over the series store.

Windows are recomputed from source samples on every request. A window that
is already closed is memoised: once ``now`` has passed its end, its result
is frozen and later arrivals for that range no longer change it.
"""

import logging
import math
import threading
import time
from collections.abc import Callable

from gcwatch.core import statistics
from gcwatch.core.exceptions import EvaluationTimeout, InsufficientData
from gcwatch.core.models import MetricSelector, Statistic, Window
from gcwatch.core.ports import SeriesStoragePort

logger = logging.getLogger(__name__)

# How many samples to read between budget checks.
_BUDGET_CHECK_EVERY = 512

_CacheKey = tuple[MetricSelector, Statistic, float, float]


def period_start_for(timestamp: float, period: float) -> float:
    """Return the epoch-aligned start of the period containing ``timestamp``."""
    return math.floor(timestamp / period) * period


def last_closed_start(now: float, period: float) -> float:
    """Return the start of the most recent period that has fully elapsed."""
    return period_start_for(now, period) - period


class WindowedAggregator:
    """Computes rolling statistics for selectors from a SeriesStoragePort.

    Args:
        storage: Source of samples.
        budget_seconds: Wall-clock budget for aggregating a single window.
        max_samples: Upper bound on samples aggregated for a single window.
        clock: Source of "now" in Unix seconds.
    """

    def __init__(
        self,
        storage: SeriesStoragePort,
        *,
        budget_seconds: float | None = None,
        max_samples: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._budget_seconds = budget_seconds
        self._max_samples = max_samples
        self._clock = clock
        self._closed: dict[_CacheKey, Window] = {}
        self._lock = threading.Lock()

    def evaluate(
        self,
        selector: MetricSelector,
        statistic: Statistic,
        period_start: float,
        period_length: float,
        *,
        now: float | None = None,
    ) -> Window:
        """Compute one window.

        Raises:
            InsufficientData: No samples fall in ``[period_start, period_end)``.
            EvaluationTimeout: The compute budget was exceeded.
        """
        cache_key = (selector, statistic, period_start, period_length)
        cached = self._closed.get(cache_key)
        if cached is not None:
            return cached

        now = self._clock() if now is None else now
        values = self._collect(selector, period_start, period_length)
        if not values:
            raise InsufficientData(selector.canonical, period_start, period_length)

        window = Window(
            key=selector,
            period_start=period_start,
            period_length=period_length,
            statistic=statistic,
            value=statistics.compute(statistic, values),
            sample_count=len(values),
        )
        if window.is_closed(now):
            with self._lock:
                self._closed[cache_key] = window
        return window

    def _collect(
        self, selector: MetricSelector, period_start: float, period_length: float
    ) -> list[float]:
        deadline = (
            time.perf_counter() + self._budget_seconds
            if self._budget_seconds is not None
            else None
        )
        values: list[float] = []
        view = self._storage.query(selector, period_start, period_start + period_length)
        for index, sample in enumerate(view):
            values.append(sample.value)
            if self._max_samples is not None and len(values) > self._max_samples:
                raise EvaluationTimeout(
                    selector.canonical,
                    period_start,
                    f"more than {self._max_samples} samples in window",
                )
            if (
                deadline is not None
                and index % _BUDGET_CHECK_EVERY == 0
                and time.perf_counter() > deadline
            ):
                raise EvaluationTimeout(
                    selector.canonical,
                    period_start,
                    f"exceeded {self._budget_seconds}s budget",
                )
        return values

    def latest_closed(
        self,
        selector: MetricSelector,
        statistic: Statistic,
        period: float,
        *,
        now: float | None = None,
    ) -> Window:
        """Return the most recent fully elapsed window."""
        now = self._clock() if now is None else now
        start = last_closed_start(now, period)
        return self.evaluate(selector, statistic, start, period, now=now)

    def trailing(
        self,
        selector: MetricSelector,
        statistic: Statistic,
        period: float,
        count: int,
        *,
        now: float | None = None,
    ) -> list[Window | None]:
        """Return the last ``count`` closed windows, oldest first.

        Periods without samples are returned as None.
        """
        now = self._clock() if now is None else now
        newest = last_closed_start(now, period)
        windows: list[Window | None] = []
        for offset in range(count - 1, -1, -1):
            start = newest - offset * period
            try:
                windows.append(self.evaluate(selector, statistic, start, period, now=now))
            except InsufficientData:
                windows.append(None)
        return windows

    def forget_before(self, timestamp: float) -> int:
        """Drop memoised windows that ended before ``timestamp``."""
        with self._lock:
            stale = [k for k, w in self._closed.items() if w.period_end < timestamp]
            for key in stale:
                del self._closed[key]
        if stale:
            logger.debug("Dropped %d memoised windows before %s", len(stale), timestamp)
        return len(stale)
