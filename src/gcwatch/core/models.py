"""Core domain models for GC health monitoring."""

from __future__ import annotations

import fnmatch
import operator
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from gcwatch.core.exceptions import ConfigInvalid, StaleSample

Dimensions = tuple[tuple[str, str], ...]


def _canonical_dimensions(
    dimensions: Mapping[str, str] | Iterable[tuple[str, str]],
) -> Dimensions:
    items = dimensions.items() if isinstance(dimensions, Mapping) else dimensions
    return tuple(sorted((str(name), str(value)) for name, value in items))


def _render(namespace: str, metric_name: str, dimensions: Dimensions) -> str:
    if not dimensions:
        return f"{namespace}/{metric_name}"
    parts = ",".join(f"{name}={value}" for name, value in dimensions)
    return f"{namespace}/{metric_name}{{{parts}}}"


class Statistic(str, Enum):
    """Rolling statistic computed over a window."""

    AVG = "avg"
    MAX = "max"
    MIN = "min"
    SUM = "sum"
    P95 = "p95"
    P99 = "p99"
    COUNT = "count"


class Comparison(str, Enum):
    """Threshold comparison operator."""

    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="

    def apply(self, value: float, threshold: float) -> bool:
        """Return True if ``value`` breaches ``threshold`` under this operator."""
        return _COMPARATORS[self](value, threshold)


_COMPARATORS = {
    Comparison.GT: operator.gt,
    Comparison.GE: operator.ge,
    Comparison.LT: operator.lt,
    Comparison.LE: operator.le,
}


class TreatMissingData(str, Enum):
    """Policy applied to an evaluation period without samples."""

    BREACHING = "breaching"
    NOT_BREACHING = "notBreaching"
    IGNORE = "ignore"
    MISSING = "missing"


class AlarmStateValue(str, Enum):
    OK = "OK"
    ALARM = "ALARM"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


class Severity(str, Enum):
    """Event severity, ordered info < warning < critical."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class Combinator(str, Enum):
    """How a correlation rule combines its signals."""

    ALL = "ALL"
    ANY = "ANY"
    SEQUENCE = "SEQUENCE"


@dataclass(frozen=True)
class MetricKey:
    """Identity of one time series.

    Dimensions may be passed as a mapping or as pairs; they are stored in a
    canonical sorted order so that equality and hashing ignore input order.

    Attributes:
        namespace: Producer namespace (e.g., "payments/jvm").
        metric_name: Metric name (e.g., "heap_used_ratio").
        dimensions: Sorted (name, value) pairs.
    """

    namespace: str
    metric_name: str
    dimensions: Dimensions = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "dimensions", _canonical_dimensions(self.dimensions))

    @property
    def canonical(self) -> str:
        return _render(self.namespace, self.metric_name, self.dimensions)

    def dimension(self, name: str) -> str | None:
        return dict(self.dimensions).get(name)


@dataclass(frozen=True)
class KeyPattern:
    """Selects every series whose identity matches shell-style globs.

    Namespace, metric name and dimension values are matched with
    ``fnmatch``. A series may carry dimensions the pattern does not name.
    """

    namespace: str
    metric_name: str
    dimensions: Dimensions = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "dimensions", _canonical_dimensions(self.dimensions))

    @property
    def canonical(self) -> str:
        return _render(self.namespace, self.metric_name, self.dimensions)

    def matches(self, key: MetricKey) -> bool:
        if not fnmatch.fnmatchcase(key.namespace, self.namespace):
            return False
        if not fnmatch.fnmatchcase(key.metric_name, self.metric_name):
            return False
        values = dict(key.dimensions)
        for name, pattern in self.dimensions:
            value = values.get(name)
            if value is None or not fnmatch.fnmatchcase(value, pattern):
                return False
        return True


MetricSelector = MetricKey | KeyPattern


@dataclass(frozen=True)
class Sample:
    """A single metric measurement. Never mutated after ingestion."""

    key: MetricKey
    timestamp: float
    value: float
    unit: str = "None"


@dataclass(frozen=True)
class Window:
    """Aggregate of one selector's samples over ``[period_start, period_end)``."""

    key: MetricSelector
    period_start: float
    period_length: float
    statistic: Statistic
    value: float
    sample_count: int

    @property
    def period_end(self) -> float:
        return self.period_start + self.period_length

    def is_closed(self, now: float) -> bool:
        return now >= self.period_end


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention floor for stored samples.

    Attributes:
        max_age_seconds: Samples older than ``now - max_age_seconds`` are
            rejected on ingestion and evicted from storage.
        max_count: Optional cap on samples kept per series; oldest go first.
    """

    max_age_seconds: float = 900.0
    max_count: int | None = None

    def __post_init__(self) -> None:
        if self.max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive")
        if self.max_count is not None and self.max_count <= 0:
            raise ValueError("max_count must be positive")

    def floor(self, now: float) -> float:
        return now - self.max_age_seconds


@dataclass
class IngestReport:
    """Outcome of a batch ingestion. Stale samples never fail the batch."""

    accepted: int = 0
    duplicates: int = 0
    stale: list[StaleSample] = field(default_factory=list)
    invalid: int = 0

    def merge(self, other: IngestReport) -> None:
        self.accepted += other.accepted
        self.duplicates += other.duplicates
        self.stale.extend(other.stale)
        self.invalid += other.invalid


@dataclass(frozen=True)
class AlarmConfig:
    """Static threshold alarm with "M out of N" hysteresis."""

    id: str
    key: MetricSelector
    statistic: Statistic
    comparison: Comparison
    threshold: float
    period: float
    evaluation_periods: int
    datapoints_to_alarm: int
    treat_missing_data: TreatMissingData = TreatMissingData.MISSING
    severity: Severity = Severity.WARNING
    description: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigInvalid("alarm id must not be empty", kind="alarm")
        if self.period <= 0:
            raise ConfigInvalid("period must be positive", definition_id=self.id, kind="alarm")
        if self.evaluation_periods < 1:
            raise ConfigInvalid(
                "evaluation_periods must be at least 1", definition_id=self.id, kind="alarm"
            )
        if not 1 <= self.datapoints_to_alarm <= self.evaluation_periods:
            raise ConfigInvalid(
                "datapoints_to_alarm must be between 1 and evaluation_periods",
                definition_id=self.id,
                kind="alarm",
            )

    @property
    def namespace(self) -> str:
        return self.key.namespace


# A breach-ring slot: True = breach, False = compliant, None = explicit missing.
Slot = bool | None


@dataclass(frozen=True)
class AlarmState:
    """Latest evaluated state of one alarm.

    Attributes:
        alarm_id: Alarm this state belongs to.
        state: Current state.
        consecutive_breaches: Breaches at the tail of the ring.
        last_evaluated_period: Start of the most recently evaluated period.
        last_transition_at: Evaluation time of the last state change.
        reason: Diagnostic for the current state.
        recent: The last ``evaluation_periods`` ring slots, oldest first.
        last_value: Window value of the most recent period with data.
    """

    alarm_id: str
    state: AlarmStateValue = AlarmStateValue.INSUFFICIENT_DATA
    consecutive_breaches: int = 0
    last_evaluated_period: float | None = None
    last_transition_at: float | None = None
    reason: str = "Unchecked: initial alarm creation"
    recent: tuple[Slot, ...] = ()
    last_value: float | None = None

    @property
    def breaches(self) -> int:
        return sum(1 for slot in self.recent if slot is True)


@dataclass(frozen=True)
class AlarmTransition:
    """Emitted whenever an alarm changes state."""

    alarm_id: str
    previous: AlarmStateValue
    current: AlarmStateValue
    timestamp: float
    period_start: float
    reason: str
    namespace: str = ""
    severity: Severity = Severity.WARNING
    value: float | None = None

    kind: Literal["alarm"] = "alarm"

    @property
    def dedup_key(self) -> str:
        return f"alarm:{self.alarm_id}:{self.current.value}"


@dataclass(frozen=True)
class AlarmRef:
    """Signal that is true while the referenced alarm is in ALARM."""

    alarm_id: str

    @property
    def signal_id(self) -> str:
        return f"alarm:{self.alarm_id}"


@dataclass(frozen=True)
class MetricPredicate:
    """Signal that is true while the latest closed window satisfies a threshold."""

    key: MetricSelector
    statistic: Statistic
    period: float
    comparison: Comparison
    threshold: float
    name: str = ""

    @property
    def signal_id(self) -> str:
        if self.name:
            return f"metric:{self.name}"
        return (
            f"metric:{self.key.canonical}:{self.statistic.value}:{self.period:g}"
            f"{self.comparison.value}{self.threshold:g}"
        )


@dataclass(frozen=True)
class TrendPredicate:
    """Long-window "never drops" trend check over ``periods`` closed windows.

    True when every window exists, no window falls below ``tolerance`` times
    the maximum of the windows before it, and the last value is not below
    the first.
    """

    key: MetricSelector
    period: float
    periods: int = 6
    tolerance: float = 0.95
    statistic: Statistic = Statistic.AVG
    name: str = ""

    def __post_init__(self) -> None:
        if self.periods < 2:
            raise ConfigInvalid("trend needs at least 2 periods", kind="rule")
        if not 0 < self.tolerance <= 1:
            raise ConfigInvalid("trend tolerance must be in (0, 1]", kind="rule")

    @property
    def signal_id(self) -> str:
        if self.name:
            return f"trend:{self.name}"
        return (
            f"trend:{self.key.canonical}:{self.statistic.value}:{self.period:g}"
            f"x{self.periods}@{self.tolerance:g}"
        )


Signal = AlarmRef | MetricPredicate | TrendPredicate


@dataclass(frozen=True)
class CorrelationRule:
    """Multi-signal pattern mapped to a root-cause classification."""

    id: str
    signals: tuple[Signal, ...]
    combinator: Combinator
    classification: str
    suggested_action: str = "none"
    within_seconds: float | None = None
    severity: Severity = Severity.CRITICAL
    namespace: str = ""
    target: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigInvalid("rule id must not be empty", kind="rule")
        if not self.signals:
            raise ConfigInvalid(
                "rule needs at least one signal", definition_id=self.id, kind="rule"
            )
        if self.combinator is Combinator.SEQUENCE and (
            self.within_seconds is None or self.within_seconds <= 0
        ):
            raise ConfigInvalid(
                "SEQUENCE rules need a positive within_seconds",
                definition_id=self.id,
                kind="rule",
            )

    @property
    def alarm_ids(self) -> frozenset[str]:
        return frozenset(s.alarm_id for s in self.signals if isinstance(s, AlarmRef))

    @property
    def has_predicates(self) -> bool:
        return any(not isinstance(s, AlarmRef) for s in self.signals)


@dataclass(frozen=True)
class RCAEvent:
    """Root-cause classification produced by one correlation episode."""

    rule_id: str
    classification: str
    triggering_alarms: frozenset[str]
    timestamp: float
    evidence: dict[str, Any] = field(default_factory=dict)
    suggested_action: str = "none"
    severity: Severity = Severity.CRITICAL
    namespace: str = ""
    target: str | None = None

    kind: Literal["rca"] = "rca"

    @property
    def dedup_key(self) -> str:
        return f"rca:{self.rule_id}"


DispatchEvent = AlarmTransition | RCAEvent


@dataclass(frozen=True)
class Episode:
    """An open correlation episode; closes when its contributors all clear."""

    rule_id: str
    classification: str
    started_at: float
    contributing: frozenset[str]
    triggering_alarms: frozenset[str]


@dataclass(frozen=True)
class RouteRule:
    """Static routing of events to sinks by namespace, severity and kind."""

    name: str
    sinks: tuple[str, ...]
    namespace: str = "*"
    min_severity: Severity = Severity.INFO
    kinds: frozenset[str] = frozenset({"alarm", "rca"})

    def matches(self, event: DispatchEvent) -> bool:
        if event.kind not in self.kinds:
            return False
        if event.severity.rank < self.min_severity.rank:
            return False
        return fnmatch.fnmatchcase(event.namespace, self.namespace)


@dataclass(frozen=True)
class DeliveryResult:
    """Result of one sink delivery attempt."""

    ok: bool
    detail: str = ""

    @classmethod
    def success(cls, detail: str = "") -> DeliveryResult:
        return cls(ok=True, detail=detail)

    @classmethod
    def failure(cls, detail: str) -> DeliveryResult:
        return cls(ok=False, detail=detail)


@dataclass(frozen=True)
class LogEntry:
    """A structured diagnostics log entry.

    Attributes:
        timestamp: Unix timestamp in seconds.
        level: Log level (e.g., INFO, ERROR, DEBUG).
        message: The log message.
        attributes: Additional structured fields.
    """

    timestamp: float
    level: str
    message: str
    attributes: dict[str, str | int | float | bool] = field(default_factory=dict)
