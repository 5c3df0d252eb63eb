"""In-memory series storage adapter."""

import bisect
import heapq
import logging
import math
import threading
import time
from collections.abc import Callable, Iterable, Iterator

from gcwatch.core.exceptions import StaleSample
from gcwatch.core.models import (
    IngestReport,
    KeyPattern,
    MetricKey,
    MetricSelector,
    RetentionPolicy,
    Sample,
)

logger = logging.getLogger(__name__)


class SeriesView:
    """Immutable snapshot of samples returned by a query.

    Iteration is lazy and may be restarted; later ingestion or eviction
    never changes what a view yields.
    """

    def __init__(self, samples: tuple[Sample, ...]) -> None:
        self._samples = samples

    def __iter__(self) -> Iterator[Sample]:
        return iter(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    def __bool__(self) -> bool:
        return bool(self._samples)


class _Shard:
    """Samples for one key, sorted by timestamp, guarded by its own lock."""

    __slots__ = ("lock", "timestamps", "samples")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.timestamps: list[float] = []
        self.samples: list[Sample] = []

    def insert(self, sample: Sample) -> bool:
        index = bisect.bisect_left(self.timestamps, sample.timestamp)
        if index < len(self.timestamps) and self.timestamps[index] == sample.timestamp:
            return False
        self.timestamps.insert(index, sample.timestamp)
        self.samples.insert(index, sample)
        return True

    def drop_before(self, floor: float) -> int:
        cut = bisect.bisect_left(self.timestamps, floor)
        if cut:
            del self.timestamps[:cut]
            del self.samples[:cut]
        return cut

    def trim_to(self, max_count: int) -> int:
        excess = len(self.samples) - max_count
        if excess > 0:
            del self.timestamps[:excess]
            del self.samples[:excess]
            return excess
        return 0

    def slice(self, start: float, end: float) -> list[Sample]:
        lo = bisect.bisect_left(self.timestamps, start)
        hi = bisect.bisect_left(self.timestamps, end)
        return self.samples[lo:hi]


class InMemorySeriesStorage:
    """In-memory implementation of SeriesStoragePort.

    Each key owns a shard with its own lock, so producers writing different
    keys never contend. Samples older than the retention floor are rejected
    on ingestion and evicted lazily (on the next write to the same key) or
    by a periodic ``evict`` call.

    Args:
        retention: Retention floor and optional per-key cap.
        clock: Source of "now" in Unix seconds.
    """

    def __init__(
        self,
        retention: RetentionPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._retention = retention or RetentionPolicy()
        self._clock = clock
        self._shards: dict[MetricKey, _Shard] = {}
        self._registry_lock = threading.Lock()

    @property
    def retention(self) -> RetentionPolicy:
        return self._retention

    def _shard(self, key: MetricKey) -> _Shard:
        shard = self._shards.get(key)
        if shard is not None:
            return shard
        with self._registry_lock:
            return self._shards.setdefault(key, _Shard())

    def ingest(self, sample: Sample, *, now: float | None = None, strict: bool = False) -> bool:
        """Store a sample; see SeriesStoragePort.ingest."""
        if not (math.isfinite(sample.timestamp) and math.isfinite(sample.value)):
            if strict:
                raise ValueError(f"non-finite sample for {sample.key}")
            logger.warning("Rejected non-finite sample for %s", sample.key)
            return False
        now = self._clock() if now is None else now
        floor = self._retention.floor(now)
        if sample.timestamp < floor:
            error = StaleSample(sample.key, sample.timestamp, floor)
            if strict:
                raise error
            logger.warning("Rejected stale sample: %s", error)
            return False
        shard = self._shard(sample.key)
        with shard.lock:
            if shard.timestamps and shard.timestamps[0] < floor:
                shard.drop_before(floor)
            stored = shard.insert(sample)
            if stored and self._retention.max_count is not None:
                shard.trim_to(self._retention.max_count)
        return stored

    def ingest_many(self, samples: Iterable[Sample], *, now: float | None = None) -> IngestReport:
        """Store a batch of samples; stale ones are reported, not raised."""
        now = self._clock() if now is None else now
        report = IngestReport()
        for sample in samples:
            try:
                stored = self.ingest(sample, now=now, strict=True)
            except StaleSample as exc:
                report.stale.append(exc)
                continue
            except ValueError:
                report.invalid += 1
                continue
            if stored:
                report.accepted += 1
            else:
                report.duplicates += 1
        if report.stale:
            logger.warning(
                "Rejected %d stale samples older than the retention floor",
                len(report.stale),
            )
        if report.invalid:
            logger.warning("Rejected %d samples with non-finite timestamp or value", report.invalid)
        return report

    def query(self, selector: MetricSelector, start: float, end: float) -> SeriesView:
        """Return a snapshot of samples with ``start <= timestamp < end``."""
        if isinstance(selector, KeyPattern):
            return self._query_pattern(selector, start, end)
        shard = self._shards.get(selector)
        if shard is None:
            return SeriesView(())
        with shard.lock:
            return SeriesView(tuple(shard.slice(start, end)))

    def _query_pattern(self, pattern: KeyPattern, start: float, end: float) -> SeriesView:
        slices: list[list[Sample]] = []
        for key, shard in list(self._shards.items()):
            if not pattern.matches(key):
                continue
            with shard.lock:
                slices.append(shard.slice(start, end))
        merged = heapq.merge(*slices, key=lambda s: (s.timestamp, s.key.canonical))
        return SeriesView(tuple(merged))

    def keys(self) -> list[MetricKey]:
        """Return every key that currently holds samples."""
        return [key for key, shard in list(self._shards.items()) if shard.samples]

    def count(self, key: MetricKey | None = None) -> int:
        """Return number of stored samples for ``key`` or for all keys."""
        if key is not None:
            shard = self._shards.get(key)
            return len(shard.samples) if shard else 0
        return sum(len(shard.samples) for shard in list(self._shards.values()))

    def evict(self, now: float | None = None) -> int:
        """Drop samples older than the retention floor across all keys.

        Each shard is locked only while it is trimmed, so ingestion into
        other keys proceeds during eviction.
        """
        now = self._clock() if now is None else now
        floor = self._retention.floor(now)
        evicted = 0
        for shard in list(self._shards.values()):
            with shard.lock:
                evicted += shard.drop_before(floor)
        if evicted:
            logger.debug("Evicted %d samples older than %s", evicted, floor)
        return evicted

    def clear(self) -> None:
        """Remove all samples from storage."""
        with self._registry_lock:
            self._shards.clear()
