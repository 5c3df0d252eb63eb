"""Plain-dict conversions for JSON payloads and checkpoints."""

import math
from collections.abc import Mapping
from typing import Any

from gcwatch.core.models import (
    AlarmState,
    AlarmStateValue,
    AlarmTransition,
    DispatchEvent,
    Episode,
    KeyPattern,
    LogEntry,
    MetricKey,
    MetricSelector,
    RCAEvent,
    Sample,
    Window,
)


def selector_to_dict(selector: MetricSelector) -> dict[str, Any]:
    return {
        "namespace": selector.namespace,
        "metric": selector.metric_name,
        "dimensions": dict(selector.dimensions),
        "pattern": isinstance(selector, KeyPattern),
    }


def sample_from_dict(data: Mapping[str, Any]) -> Sample:
    """Build a Sample from an ingestion payload.

    Expected keys: namespace, metric (or metricName), timestamp, value;
    optional dimensions (mapping) and unit.

    Raises:
        ValueError: A required field is missing, has the wrong type, or
            the timestamp or value is NaN or infinite.
    """
    try:
        metric = data.get("metric", data.get("metricName"))
        if metric is None:
            raise KeyError("metric")
        dimensions = data.get("dimensions") or {}
        if not isinstance(dimensions, Mapping):
            raise ValueError("dimensions must be an object")
        key = MetricKey(str(data["namespace"]), str(metric), dimensions)
        timestamp = float(data["timestamp"])
        value = float(data["value"])
        if not (math.isfinite(timestamp) and math.isfinite(value)):
            raise ValueError("timestamp and value must be finite numbers")
        return Sample(
            key=key,
            timestamp=timestamp,
            value=value,
            unit=str(data.get("unit", "None")),
        )
    except KeyError as exc:
        raise ValueError(f"missing field {exc.args[0]!r}") from exc
    except TypeError as exc:
        raise ValueError(str(exc)) from exc


def window_to_dict(window: Window) -> dict[str, Any]:
    return {
        "key": selector_to_dict(window.key),
        "period_start": window.period_start,
        "period_length": window.period_length,
        "statistic": window.statistic.value,
        "value": window.value,
        "sample_count": window.sample_count,
    }


def alarm_state_to_dict(state: AlarmState) -> dict[str, Any]:
    return {
        "alarm_id": state.alarm_id,
        "state": state.state.value,
        "consecutive_breaches": state.consecutive_breaches,
        "last_evaluated_period": state.last_evaluated_period,
        "last_transition_at": state.last_transition_at,
        "reason": state.reason,
        "recent": list(state.recent),
        "last_value": state.last_value,
    }


def alarm_state_from_dict(data: Mapping[str, Any]) -> AlarmState:
    """Rebuild an AlarmState written by ``alarm_state_to_dict``.

    Raises:
        KeyError, ValueError: The payload is not a valid alarm state.
    """
    recent = tuple(slot if slot is None else bool(slot) for slot in data.get("recent", ()))
    return AlarmState(
        alarm_id=str(data["alarm_id"]),
        state=AlarmStateValue(data["state"]),
        consecutive_breaches=int(data.get("consecutive_breaches", 0)),
        last_evaluated_period=data.get("last_evaluated_period"),
        last_transition_at=data.get("last_transition_at"),
        reason=str(data.get("reason", "")),
        recent=recent,
        last_value=data.get("last_value"),
    )


def transition_to_dict(transition: AlarmTransition) -> dict[str, Any]:
    return {
        "kind": transition.kind,
        "alarm_id": transition.alarm_id,
        "previous": transition.previous.value,
        "current": transition.current.value,
        "timestamp": transition.timestamp,
        "period_start": transition.period_start,
        "reason": transition.reason,
        "namespace": transition.namespace,
        "severity": transition.severity.value,
        "value": transition.value,
    }


def rca_event_to_dict(event: RCAEvent) -> dict[str, Any]:
    return {
        "kind": event.kind,
        "rule_id": event.rule_id,
        "classification": event.classification,
        "triggering_alarms": sorted(event.triggering_alarms),
        "timestamp": event.timestamp,
        "evidence": event.evidence,
        "suggested_action": event.suggested_action,
        "severity": event.severity.value,
        "namespace": event.namespace,
        "target": event.target,
    }


def event_to_dict(event: DispatchEvent) -> dict[str, Any]:
    if isinstance(event, RCAEvent):
        return rca_event_to_dict(event)
    return transition_to_dict(event)


def episode_to_dict(episode: Episode) -> dict[str, Any]:
    return {
        "rule_id": episode.rule_id,
        "classification": episode.classification,
        "started_at": episode.started_at,
        "contributing": sorted(episode.contributing),
        "triggering_alarms": sorted(episode.triggering_alarms),
    }


def log_entry_to_dict(entry: LogEntry) -> dict[str, Any]:
    return {
        "timestamp": entry.timestamp,
        "level": entry.level,
        "message": entry.message,
        "attributes": entry.attributes,
    }
