"""Cross-signal correlation with edge-triggered episodes.

The engine never reads live alarm state. Callers build a
CorrelationSnapshot (alarm states plus the windows every predicate
needs) and pass it in, so matching is deterministic and testable in
isolation.
"""

import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from gcwatch.core.aggregator import WindowedAggregator
from gcwatch.core.exceptions import EvaluationTimeout, InsufficientData
from gcwatch.core.models import (
    AlarmRef,
    AlarmState,
    AlarmStateValue,
    AlarmTransition,
    Combinator,
    CorrelationRule,
    Episode,
    MetricPredicate,
    RCAEvent,
    Signal,
    TrendPredicate,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CorrelationSnapshot:
    """Read-only view of alarm states and predicate windows at one instant.

    Attributes:
        timestamp: Evaluation time.
        alarms: Alarm states keyed by alarm id.
        windows: Window values keyed by predicate signal id, oldest first.
            A metric predicate has one value, a trend predicate ``periods``
            values. Missing windows are None.
    """

    timestamp: float
    alarms: Mapping[str, AlarmState] = field(default_factory=dict)
    windows: Mapping[str, tuple[float | None, ...]] = field(default_factory=dict)


def build_snapshot(
    now: float,
    alarms: Mapping[str, AlarmState],
    rules: Iterable[CorrelationRule],
    aggregator: WindowedAggregator,
) -> CorrelationSnapshot:
    """Capture alarm states and compute every window the rules' predicates need."""
    windows: dict[str, tuple[float | None, ...]] = {}
    for rule in rules:
        for signal in rule.signals:
            if isinstance(signal, AlarmRef) or signal.signal_id in windows:
                continue
            windows[signal.signal_id] = _predicate_values(signal, aggregator, now)
    return CorrelationSnapshot(
        timestamp=now,
        alarms=MappingProxyType(dict(alarms)),
        windows=MappingProxyType(windows),
    )


def _predicate_values(
    signal: MetricPredicate | TrendPredicate,
    aggregator: WindowedAggregator,
    now: float,
) -> tuple[float | None, ...]:
    try:
        if isinstance(signal, TrendPredicate):
            trailing = aggregator.trailing(
                signal.key, signal.statistic, signal.period, signal.periods, now=now
            )
            return tuple(w.value if w is not None else None for w in trailing)
        window = aggregator.latest_closed(signal.key, signal.statistic, signal.period, now=now)
        return (window.value,)
    except InsufficientData:
        return (None,)
    except EvaluationTimeout as exc:
        logger.warning("Predicate %s not evaluated: %s", signal.signal_id, exc)
        return (None,)


def never_drops(values: Sequence[float | None], tolerance: float) -> bool:
    """True when no value falls below ``tolerance`` times the prior maximum.

    Every value must be present and the series must end at or above where
    it started.
    """
    if len(values) < 2 or any(v is None for v in values):
        return False
    present = [float(v) for v in values if v is not None]
    running_max = present[0]
    for value in present[1:]:
        if value < tolerance * running_max:
            return False
        running_max = max(running_max, value)
    return present[-1] >= present[0]


def signal_active(signal: Signal, snapshot: CorrelationSnapshot) -> bool:
    """Return whether ``signal`` is triggering in ``snapshot``."""
    if isinstance(signal, AlarmRef):
        state = snapshot.alarms.get(signal.alarm_id)
        return state is not None and state.state is AlarmStateValue.ALARM
    values = snapshot.windows.get(signal.signal_id, ())
    if isinstance(signal, TrendPredicate):
        return never_drops(values, signal.tolerance)
    if not values or values[-1] is None:
        return False
    return signal.comparison.apply(values[-1], signal.threshold)


class CorrelationEngine:
    """Matches correlation rules against snapshots and emits RCA events.

    Emission is edge-triggered: a rule fires once when its condition
    becomes true, opening an episode. The episode closes only after every
    signal that contributed to the firing has stopped triggering; until
    then the rule stays silent.

    Args:
        rules: Initial rule set.
        clock: Source of "now" in Unix seconds.
    """

    def __init__(
        self,
        rules: Iterable[CorrelationRule] = (),
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._rules: dict[str, CorrelationRule] = {}
        self._episodes: dict[str, Episode] = {}
        self._since: dict[str, float] = {}
        self.load(rules)

    @property
    def rules(self) -> list[CorrelationRule]:
        return list(self._rules.values())

    def load(self, rules: Iterable[CorrelationRule]) -> None:
        """Replace the rule set; open episodes survive only for unchanged rules."""
        new_rules = {rule.id: rule for rule in rules}
        self._episodes = {
            rule_id: episode
            for rule_id, episode in self._episodes.items()
            if self._rules.get(rule_id) == new_rules.get(rule_id)
        }
        self._rules = new_rules

    def active_episodes(self) -> list[Episode]:
        return sorted(self._episodes.values(), key=lambda e: (e.started_at, e.rule_id))

    def rules_for(self, alarm_id: str) -> list[CorrelationRule]:
        """Rules whose signal set references ``alarm_id``."""
        return [rule for rule in self._rules.values() if alarm_id in rule.alarm_ids]

    def on_transition(
        self, transition: AlarmTransition, snapshot: CorrelationSnapshot
    ) -> list[RCAEvent]:
        """Re-evaluate rules that reference the alarm that just changed."""
        return self._evaluate(self.rules_for(transition.alarm_id), snapshot)

    def on_transitions(
        self, transitions: Iterable[AlarmTransition], snapshot: CorrelationSnapshot
    ) -> list[RCAEvent]:
        """Evaluate rules touched by any transition plus every predicate rule.

        Predicate signals change without alarm transitions, so rules that
        contain them are checked on every call.
        """
        changed = {t.alarm_id for t in transitions}
        selected = [
            rule
            for rule in self._rules.values()
            if rule.has_predicates or rule.alarm_ids & changed
        ]
        return self._evaluate(selected, snapshot)

    def on_tick(self, snapshot: CorrelationSnapshot) -> list[RCAEvent]:
        """Evaluate every rule."""
        return self._evaluate(list(self._rules.values()), snapshot)

    def _evaluate(
        self, rules: Sequence[CorrelationRule], snapshot: CorrelationSnapshot
    ) -> list[RCAEvent]:
        events: list[RCAEvent] = []
        for rule in rules:
            try:
                event = self._evaluate_rule(rule, snapshot)
            except Exception:
                logger.exception("Correlation rule %s failed", rule.id)
                continue
            if event is not None:
                events.append(event)
        return events

    def _observe(self, signal: Signal, snapshot: CorrelationSnapshot) -> bool:
        active = signal_active(signal, snapshot)
        sid = signal.signal_id
        if not active:
            self._since.pop(sid, None)
            return False
        if isinstance(signal, AlarmRef):
            # An alarm became true when it last transitioned into ALARM.
            state = snapshot.alarms[signal.alarm_id]
            self._since[sid] = (
                snapshot.timestamp
                if state.last_transition_at is None
                else state.last_transition_at
            )
        else:
            self._since.setdefault(sid, snapshot.timestamp)
        return True

    def _matches(self, rule: CorrelationRule, active: dict[str, bool]) -> bool:
        flags = [active[s.signal_id] for s in rule.signals]
        if rule.combinator is Combinator.ANY:
            return any(flags)
        if not all(flags):
            return False
        if rule.combinator is Combinator.ALL:
            return True
        within = rule.within_seconds or 0.0
        times = [self._since[s.signal_id] for s in rule.signals]
        return all(
            0 <= later - earlier <= within
            for earlier, later in zip(times, times[1:])
        )

    def _evaluate_rule(
        self, rule: CorrelationRule, snapshot: CorrelationSnapshot
    ) -> RCAEvent | None:
        active = {s.signal_id: self._observe(s, snapshot) for s in rule.signals}

        episode = self._episodes.get(rule.id)
        if episode is not None:
            if any(active.get(sid, False) for sid in episode.contributing):
                return None
            logger.info("Correlation episode for %s closed", rule.id)
            del self._episodes[rule.id]

        if not self._matches(rule, active):
            return None

        contributing = frozenset(sid for sid, on in active.items() if on)
        triggering = frozenset(
            s.alarm_id
            for s in rule.signals
            if isinstance(s, AlarmRef) and active[s.signal_id]
        )
        self._episodes[rule.id] = Episode(
            rule_id=rule.id,
            classification=rule.classification,
            started_at=snapshot.timestamp,
            contributing=contributing,
            triggering_alarms=triggering,
        )
        event = RCAEvent(
            rule_id=rule.id,
            classification=rule.classification,
            triggering_alarms=triggering,
            timestamp=snapshot.timestamp,
            evidence=self._evidence(rule, snapshot, active),
            suggested_action=rule.suggested_action,
            severity=rule.severity,
            namespace=rule.namespace,
            target=rule.target,
        )
        logger.info(
            "Correlation rule %s fired: %s (alarms: %s)",
            rule.id,
            rule.classification,
            ", ".join(sorted(triggering)) or "-",
        )
        return event

    def _evidence(
        self,
        rule: CorrelationRule,
        snapshot: CorrelationSnapshot,
        active: Mapping[str, bool],
    ) -> dict[str, Any]:
        signals: dict[str, Any] = {}
        for signal in rule.signals:
            sid = signal.signal_id
            entry: dict[str, Any] = {"active": active[sid], "since": self._since.get(sid)}
            if isinstance(signal, AlarmRef):
                state = snapshot.alarms.get(signal.alarm_id)
                if state is not None:
                    entry["state"] = state.state.value
                    entry["value"] = state.last_value
                    entry["reason"] = state.reason
            else:
                entry["values"] = list(snapshot.windows.get(sid, ()))
            signals[sid] = entry
        return {
            "combinator": rule.combinator.value,
            "snapshot_at": snapshot.timestamp,
            "signals": signals,
        }
