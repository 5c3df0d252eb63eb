"""Port interfaces for storage, sinks and enrichment.

These protocols define the contracts that adapters must implement.
The core domain depends only on these interfaces, not concrete implementations.
"""

from collections.abc import Iterable, Mapping
from typing import Any, Protocol, runtime_checkable

from gcwatch.core.models import (
    AlarmState,
    DeliveryResult,
    DispatchEvent,
    IngestReport,
    LogEntry,
    MetricKey,
    MetricSelector,
    RCAEvent,
    Sample,
)


@runtime_checkable
class SeriesStoragePort(Protocol):
    """Port for the append-only series store.

    Adapters implementing this protocol keep per-key, time-ordered samples
    with a retention floor. Examples: InMemorySeriesStorage.
    """

    def ingest(self, sample: Sample, *, now: float | None = None, strict: bool = False) -> bool:
        """Store a sample.

        Returns:
            True if stored, False for an exact ``(key, timestamp)`` duplicate.

        Raises:
            StaleSample: Only when ``strict`` is set and the sample is older
                than the retention floor. Otherwise the sample is dropped.
            ValueError: Only when ``strict`` is set and the timestamp or value
                is NaN or infinite. Otherwise the sample is dropped.
        """
        ...

    def ingest_many(self, samples: Iterable[Sample], *, now: float | None = None) -> IngestReport:
        """Store a batch; stale and non-finite samples are reported, never raised."""
        ...

    def query(self, selector: MetricSelector, start: float, end: float) -> Iterable[Sample]:
        """Return samples with ``start <= timestamp < end``.

        Returns:
            A finite, restartable snapshot ordered by timestamp ascending.
        """
        ...

    def keys(self) -> list[MetricKey]:
        """Return every key with stored samples."""
        ...

    def evict(self, now: float | None = None) -> int:
        """Drop samples older than the retention floor; return how many."""
        ...


@runtime_checkable
class SinkPort(Protocol):
    """Port for notification and remediation sinks.

    Attributes:
        name: Unique sink name used by routes.
        kind: "notification" or "remediation".
    """

    name: str
    kind: str

    async def deliver(self, event: DispatchEvent) -> DeliveryResult:
        """Deliver one event. Failures may be returned or raised."""
        ...


@runtime_checkable
class CheckpointStoragePort(Protocol):
    """Port for persisting alarm state across restarts."""

    async def save_states(self, states: Mapping[str, AlarmState]) -> None:
        """Persist the given alarm states, replacing earlier copies."""
        ...

    async def load_states(self) -> dict[str, AlarmState]:
        """Load every persisted alarm state keyed by alarm id."""
        ...


@runtime_checkable
class LogStoragePort(Protocol):
    """Port for diagnostics log storage.

    Examples: RingBufferLogStorage.
    """

    def write(self, entry: LogEntry) -> None:
        """Write a log entry to storage."""
        ...

    def read(self, since: float = 0, level: str | None = None) -> Iterable[LogEntry]:
        """Read log entries since the given timestamp.

        Args:
            since: Unix timestamp. Returns entries with timestamp > since.
            level: Optional level filter (case-insensitive).

        Returns:
            Iterable of LogEntry objects, ordered by timestamp ascending.
        """
        ...


@runtime_checkable
class EvidenceEnricher(Protocol):
    """Optional collaborator adding evidence (e.g. log matches) to RCA events."""

    async def __call__(self, event: RCAEvent) -> Mapping[str, Any]:
        ...
