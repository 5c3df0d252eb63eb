"""Declarative configuration loading.

Documents are YAML (or JSON, which YAML accepts) with the top-level
sections ``settings``, ``alarms``, ``correlation_rules``, ``routes`` and
``sinks``. Every entry is validated on its own: a broken entry becomes a
ConfigInvalid in the resulting generation while the rest still loads.

Example:
    ```yaml
    alarms:
      - id: payments-heap-high
        key: {namespace: payments/jvm, metric: heap_used_ratio}
        statistic: avg
        comparison: ">"
        threshold: 0.8
        period: 300
        evaluationPeriods: 3
        datapointsToAlarm: 3
    correlation_rules:
      - id: memory-leak
        combinator: ALL
        classification: memory-leak
        signals:
          - alarm: payments-heap-high
          - trend: {key: {namespace: payments/jvm, metric: heap_used_ratio}, period: 300}
    ```
"""

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from gcwatch.core.config import ConfigGeneration, EngineSettings, SinkSpec, build_generation
from gcwatch.core.exceptions import ConfigInvalid
from gcwatch.core.models import (
    AlarmConfig,
    AlarmRef,
    Combinator,
    Comparison,
    CorrelationRule,
    KeyPattern,
    MetricKey,
    MetricPredicate,
    MetricSelector,
    RouteRule,
    Severity,
    Signal,
    Statistic,
    TreatMissingData,
    TrendPredicate,
)

logger = logging.getLogger(__name__)

SECTIONS = ("settings", "alarms", "correlation_rules", "routes", "sinks")

_GLOB_CHARS = frozenset("*?[")


class _Document(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Keys and signals
# ---------------------------------------------------------------------------


class KeyDocument(_Document):
    namespace: str = Field(..., min_length=1)
    metric: str = Field(..., min_length=1, alias="metricName")
    dimensions: dict[str, str] = Field(default_factory=dict)
    pattern: bool = False

    def to_selector(self) -> MetricSelector:
        values = [self.namespace, self.metric, *self.dimensions.values()]
        if self.pattern or any(_GLOB_CHARS & set(value) for value in values):
            return KeyPattern(self.namespace, self.metric, self.dimensions)
        return MetricKey(self.namespace, self.metric, self.dimensions)


class PredicateDocument(_Document):
    key: KeyDocument
    statistic: Statistic
    period: float = Field(..., gt=0)
    comparison: Comparison
    threshold: float
    name: str = ""

    def to_signal(self) -> MetricPredicate:
        return MetricPredicate(
            key=self.key.to_selector(),
            statistic=self.statistic,
            period=self.period,
            comparison=self.comparison,
            threshold=self.threshold,
            name=self.name,
        )


class TrendDocument(_Document):
    key: KeyDocument
    period: float = Field(..., gt=0)
    periods: int = Field(6, ge=2)
    tolerance: float = Field(0.95, gt=0, le=1)
    statistic: Statistic = Statistic.AVG
    name: str = ""

    def to_signal(self) -> TrendPredicate:
        return TrendPredicate(
            key=self.key.to_selector(),
            period=self.period,
            periods=self.periods,
            tolerance=self.tolerance,
            statistic=self.statistic,
            name=self.name,
        )


class SignalDocument(_Document):
    """Exactly one of ``alarm``, ``metric`` or ``trend``."""

    alarm: str | None = None
    metric: PredicateDocument | None = None
    trend: TrendDocument | None = None

    @model_validator(mode="before")
    @classmethod
    def _shorthand(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"alarm": data}
        return data

    @model_validator(mode="after")
    def _exactly_one(self) -> "SignalDocument":
        given = [v for v in (self.alarm, self.metric, self.trend) if v is not None]
        if len(given) != 1:
            raise ValueError("a signal needs exactly one of alarm, metric or trend")
        return self

    def to_signal(self) -> Signal:
        if self.alarm is not None:
            return AlarmRef(self.alarm)
        if self.metric is not None:
            return self.metric.to_signal()
        assert self.trend is not None
        return self.trend.to_signal()


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


class AlarmDocument(_Document):
    id: str = Field(..., min_length=1)
    key: KeyDocument
    statistic: Statistic
    comparison: Comparison
    threshold: float
    period: float = Field(..., gt=0)
    evaluation_periods: int = Field(..., ge=1, alias="evaluationPeriods")
    datapoints_to_alarm: int = Field(..., ge=1, alias="datapointsToAlarm")
    treat_missing_data: TreatMissingData = Field(
        TreatMissingData.MISSING, alias="treatMissingData"
    )
    severity: Severity = Severity.WARNING
    description: str = ""

    def to_config(self) -> AlarmConfig:
        return AlarmConfig(
            id=self.id,
            key=self.key.to_selector(),
            statistic=self.statistic,
            comparison=self.comparison,
            threshold=self.threshold,
            period=self.period,
            evaluation_periods=self.evaluation_periods,
            datapoints_to_alarm=self.datapoints_to_alarm,
            treat_missing_data=self.treat_missing_data,
            severity=self.severity,
            description=self.description,
        )


class RuleDocument(_Document):
    id: str = Field(..., min_length=1)
    signals: list[SignalDocument] = Field(..., min_length=1)
    combinator: Combinator
    classification: str = Field(..., min_length=1)
    suggested_action: str = Field("none", alias="suggestedAction")
    within_seconds: float | None = Field(None, gt=0, alias="withinSeconds")
    severity: Severity = Severity.CRITICAL
    namespace: str = ""
    target: str | None = None

    def to_rule(self) -> CorrelationRule:
        return CorrelationRule(
            id=self.id,
            signals=tuple(signal.to_signal() for signal in self.signals),
            combinator=self.combinator,
            classification=self.classification,
            suggested_action=self.suggested_action,
            within_seconds=self.within_seconds,
            severity=self.severity,
            namespace=self.namespace,
            target=self.target,
        )


class RouteDocument(_Document):
    name: str = Field(..., min_length=1)
    sinks: list[str] = Field(..., min_length=1)
    namespace: str = "*"
    min_severity: Severity = Field(Severity.INFO, alias="minSeverity")
    kinds: list[Literal["alarm", "rca"]] = Field(default_factory=lambda: ["alarm", "rca"])

    def to_route(self) -> RouteRule:
        return RouteRule(
            name=self.name,
            sinks=tuple(self.sinks),
            namespace=self.namespace,
            min_severity=self.min_severity,
            kinds=frozenset(self.kinds),
        )


class SinkDocument(_Document):
    name: str = Field(..., min_length=1)
    type: Literal["webhook", "recording"]
    kind: Literal["notification", "remediation"] = "notification"
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(5.0, gt=0, alias="timeoutSeconds")
    cooldown_seconds: float | None = Field(None, gt=0, alias="cooldownSeconds")
    burst: int | None = Field(None, ge=1)

    @model_validator(mode="after")
    def _webhook_url(self) -> "SinkDocument":
        if self.type == "webhook" and not self.url:
            raise ValueError("webhook sinks need a url")
        return self

    def to_spec(self) -> SinkSpec:
        return SinkSpec(
            name=self.name,
            type=self.type,
            kind=self.kind,
            url=self.url,
            headers=tuple(sorted(self.headers.items())),
            timeout_seconds=self.timeout_seconds,
            cooldown_seconds=self.cooldown_seconds,
            burst=self.burst,
        )


class SettingsDocument(_Document):
    retention_seconds: float = Field(900.0, gt=0)
    max_samples_per_key: int | None = Field(None, ge=1)
    evaluation_interval_seconds: float = Field(10.0, gt=0)
    eviction_interval_seconds: float = Field(60.0, gt=0)
    evaluation_budget_seconds: float | None = Field(0.25, gt=0)
    max_samples_per_window: int | None = Field(None, ge=1)
    correlation_trigger: Literal["transition", "tick"] = "transition"
    suppression_seconds: float = Field(300.0, ge=0)
    cooldown_seconds: float = Field(60.0, gt=0)
    cooldown_burst: int = Field(5, ge=1)
    max_retries: int = Field(3, ge=0)
    base_backoff_seconds: float = Field(0.5, ge=0)
    max_backoff_seconds: float = Field(5.0, ge=0)
    dispatch_concurrency: int = Field(8, ge=1)
    ingest_queue_size: int = Field(10_000, ge=1)
    diagnostics_buffer_size: int = Field(1000, ge=1)
    default_sinks: list[str] = Field(default_factory=list)

    def to_settings(self) -> EngineSettings:
        values = self.model_dump()
        values["default_sinks"] = tuple(values["default_sinks"])
        return EngineSettings(**values)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        parts.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(parts)


def _entry_id(entry: Any, field_name: str) -> str | None:
    if isinstance(entry, Mapping):
        value = entry.get(field_name)
        if isinstance(value, str):
            return value
    return None


def _load_entries(
    entries: Any,
    kind: str,
    document: type[_Document],
    convert: str,
    id_field: str,
    errors: list[ConfigInvalid],
) -> list[Any]:
    if entries is None:
        return []
    if not isinstance(entries, list):
        errors.append(ConfigInvalid("section must be a list", kind=kind))
        return []
    loaded = []
    for index, entry in enumerate(entries):
        definition_id = _entry_id(entry, id_field) or f"#{index}"
        try:
            parsed = document.model_validate(entry)
            loaded.append(getattr(parsed, convert)())
        except ValidationError as exc:
            errors.append(ConfigInvalid(_describe(exc), definition_id=definition_id, kind=kind))
        except ConfigInvalid as exc:
            errors.append(ConfigInvalid(exc.reason, definition_id=definition_id, kind=kind))
    return loaded


def _load_settings(data: Any, errors: list[ConfigInvalid]) -> EngineSettings:
    if data is None:
        return EngineSettings()
    try:
        return SettingsDocument.model_validate(data).to_settings()
    except ValidationError as exc:
        errors.append(ConfigInvalid(_describe(exc), kind="settings"))
        return EngineSettings()


def parse_document(text: str) -> dict[str, Any]:
    """Parse YAML or JSON text into a mapping.

    Raises:
        ConfigInvalid: The text is not a readable mapping.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigInvalid(f"unreadable document: {exc}", kind="document") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigInvalid("document must be a mapping of sections", kind="document")
    return data


def load_config(source: str | Path | Mapping[str, Any]) -> ConfigGeneration:
    """Build a ConfigGeneration from a document.

    Args:
        source: A path to a YAML/JSON file, the document text itself, or an
            already parsed mapping.

    Returns:
        A generation holding every valid definition, with one ConfigInvalid
        per rejected definition in ``errors``.

    Raises:
        ConfigInvalid: The document as a whole cannot be read.
    """
    if isinstance(source, Path):
        try:
            text = source.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigInvalid(f"cannot read {source}: {exc}", kind="document") from exc
        data = parse_document(text)
    elif isinstance(source, str):
        data = parse_document(source)
    else:
        data = dict(source)

    errors: list[ConfigInvalid] = []
    for section in sorted(set(data) - set(SECTIONS)):
        errors.append(ConfigInvalid("unknown section", definition_id=str(section), kind="document"))

    settings = _load_settings(data.get("settings"), errors)
    alarms = _load_entries(data.get("alarms"), "alarm", AlarmDocument, "to_config", "id", errors)
    rules = _load_entries(
        data.get("correlation_rules"), "rule", RuleDocument, "to_rule", "id", errors
    )
    routes = _load_entries(data.get("routes"), "route", RouteDocument, "to_route", "name", errors)
    sinks = _load_entries(data.get("sinks"), "sink", SinkDocument, "to_spec", "name", errors)

    return build_generation(
        settings=settings,
        alarms=alarms,
        rules=rules,
        routes=routes,
        sinks=sinks,
        errors=errors,
    )


def load_config_file(path: str | Path) -> ConfigGeneration:
    """Load a generation from a YAML or JSON file."""
    return load_config(Path(path))
