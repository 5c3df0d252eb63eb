"""Error taxonomy for the monitoring engine.

Only StoreCorrupted is fatal. Every other error is scoped to one sample,
alarm, rule, definition or sink and is handled at that seam.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gcwatch.core.models import MetricKey


class GCWatchError(Exception):
    """Base class for all gcwatch errors."""


class StaleSample(GCWatchError):
    """A sample is older than the series store's retention floor.

    Attributes:
        key: Series the sample was addressed to.
        timestamp: Timestamp of the rejected sample.
        floor: Retention floor at the time of ingestion.
    """

    def __init__(self, key: MetricKey, timestamp: float, floor: float) -> None:
        self.key = key
        self.timestamp = timestamp
        self.floor = floor
        super().__init__(
            f"sample for {key.canonical} at {timestamp} is older than "
            f"retention floor {floor}"
        )


class InsufficientData(GCWatchError):
    """No samples fall inside the requested window."""

    def __init__(self, selector: str, period_start: float, period_length: float) -> None:
        self.selector = selector
        self.period_start = period_start
        self.period_length = period_length
        super().__init__(
            f"no samples for {selector} in "
            f"[{period_start}, {period_start + period_length})"
        )


class EvaluationTimeout(GCWatchError):
    """Aggregating a window exceeded its compute budget."""

    def __init__(self, selector: str, period_start: float, reason: str) -> None:
        self.selector = selector
        self.period_start = period_start
        self.reason = reason
        super().__init__(f"evaluation of {selector} at {period_start} abandoned: {reason}")


class ConfigInvalid(GCWatchError):
    """A single alarm, rule, route or sink definition failed validation.

    Attributes:
        definition_id: Identifier of the definition, when one could be read.
        kind: Definition kind ("alarm", "rule", "route", "sink", "settings").
        reason: Human readable diagnostic.
    """

    def __init__(self, reason: str, *, definition_id: str | None = None, kind: str = "") -> None:
        self.definition_id = definition_id
        self.kind = kind
        self.reason = reason
        label = f"{kind} {definition_id!r}" if definition_id else kind or "definition"
        super().__init__(f"invalid {label}: {reason}")


class DispatchFailure(GCWatchError):
    """A sink could not deliver an event after all retries."""

    def __init__(self, sink: str, event_id: str, attempts: int, last_error: str) -> None:
        self.sink = sink
        self.event_id = event_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"sink {sink!r} failed to deliver {event_id} after {attempts} attempts: "
            f"{last_error}"
        )


class StoreCorrupted(GCWatchError):
    """Persisted state can no longer be read. Fatal to the engine."""
