"""Alarm state machine with "M out of N" hysteresis.

Each alarm keeps a ring of its last ``evaluation_periods`` outcomes. The
alarm enters ALARM when at least ``datapoints_to_alarm`` slots are breaches
and returns to OK only when none are. Anything in between keeps the
current state.
"""

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace

from gcwatch.core.aggregator import WindowedAggregator, last_closed_start
from gcwatch.core.exceptions import ConfigInvalid, EvaluationTimeout, InsufficientData
from gcwatch.core.models import (
    AlarmConfig,
    AlarmState,
    AlarmStateValue,
    AlarmTransition,
    Severity,
    Slot,
    TreatMissingData,
)

logger = logging.getLogger(__name__)


@dataclass
class EvaluationCycle:
    """What one pass over every alarm produced."""

    transitions: list[AlarmTransition] = field(default_factory=list)
    timeouts: list[EvaluationTimeout] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


def due_periods(alarm: AlarmConfig, state: AlarmState, now: float) -> list[float]:
    """Return period starts that have elapsed but not been evaluated, oldest first.

    A fresh alarm starts with the most recent closed period. After a gap,
    at most ``evaluation_periods`` periods are replayed, since older ones
    would fall out of the ring anyway.
    """
    newest = last_closed_start(now, alarm.period)
    if state.last_evaluated_period is None:
        return [newest]
    missed = round((newest - state.last_evaluated_period) / alarm.period)
    if missed <= 0:
        return []
    missed = min(missed, alarm.evaluation_periods)
    return [newest - offset * alarm.period for offset in range(missed - 1, -1, -1)]


def _decide(alarm: AlarmConfig, state: AlarmState, recent: tuple[Slot, ...]) -> AlarmStateValue:
    breaches = sum(1 for slot in recent if slot is True)
    if breaches >= alarm.datapoints_to_alarm:
        return AlarmStateValue.ALARM
    if breaches == 0 and any(slot is False for slot in recent):
        return AlarmStateValue.OK
    return state.state


def _consecutive(recent: tuple[Slot, ...]) -> int:
    count = 0
    for slot in reversed(recent):
        if slot is not True:
            break
        count += 1
    return count


def step(
    alarm: AlarmConfig,
    state: AlarmState,
    period_start: float,
    aggregator: WindowedAggregator,
    now: float,
) -> tuple[AlarmState, AlarmTransition | None]:
    """Evaluate a single period and return the new state and any transition.

    Raises:
        EvaluationTimeout: The window could not be aggregated within budget;
            the period is left unevaluated so it is retried next tick.
    """
    value: float | None = None
    try:
        window = aggregator.evaluate(
            alarm.key, alarm.statistic, period_start, alarm.period, now=now
        )
    except InsufficientData as exc:
        policy = alarm.treat_missing_data
        logger.debug("Alarm %s: %s, applying %s", alarm.id, exc, policy.value)
        if policy is TreatMissingData.IGNORE:
            return replace(state, last_evaluated_period=period_start), None
        if policy is TreatMissingData.MISSING:
            recent = (state.recent + (None,))[-alarm.evaluation_periods :]
            new_state = replace(
                state,
                state=AlarmStateValue.INSUFFICIENT_DATA,
                consecutive_breaches=0,
                last_evaluated_period=period_start,
                recent=recent,
                reason=f"No datapoints for period starting {period_start:g}",
            )
            return _finish(alarm, state, new_state, period_start, now, value)
        slot: Slot = policy is TreatMissingData.BREACHING
        reason_value = "missing data treated as " + ("breaching" if slot else "not breaching")
    else:
        value = window.value
        slot = alarm.comparison.apply(window.value, alarm.threshold)
        reason_value = f"{window.value:g}"

    recent = (state.recent + (slot,))[-alarm.evaluation_periods :]
    decided = _decide(alarm, state, recent)
    breaches = sum(1 for s in recent if s is True)
    new_state = replace(
        state,
        state=decided,
        consecutive_breaches=_consecutive(recent),
        last_evaluated_period=period_start,
        recent=recent,
        last_value=value if value is not None else state.last_value,
        reason=(
            f"{breaches} of last {len(recent)} datapoints breached "
            f"{alarm.comparison.value} {alarm.threshold:g} (latest: {reason_value})"
        ),
    )
    return _finish(alarm, state, new_state, period_start, now, value)


def _finish(
    alarm: AlarmConfig,
    old: AlarmState,
    new: AlarmState,
    period_start: float,
    now: float,
    value: float | None,
) -> tuple[AlarmState, AlarmTransition | None]:
    if new.state is old.state:
        return new, None
    new = replace(new, last_transition_at=now)
    transition = AlarmTransition(
        alarm_id=alarm.id,
        previous=old.state,
        current=new.state,
        timestamp=now,
        period_start=period_start,
        reason=new.reason,
        namespace=alarm.namespace,
        severity=alarm.severity if new.state is AlarmStateValue.ALARM else Severity.INFO,
        value=value,
    )
    logger.info(
        "Alarm %s: %s -> %s (%s)",
        alarm.id,
        old.state.value,
        new.state.value,
        new.reason,
    )
    return new, transition


class AlarmEvaluator:
    """Owns the AlarmState of every configured alarm.

    States are immutable snapshots; only this class replaces them. Readers
    get copies through ``state`` and ``states``.
    """

    def __init__(
        self,
        aggregator: WindowedAggregator,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._aggregator = aggregator
        self._clock = clock
        self._configs: dict[str, AlarmConfig] = {}
        self._states: dict[str, AlarmState] = {}
        self._invalid: dict[str, str] = {}

    def sync(self, alarms: Iterable[AlarmConfig], errors: Iterable[ConfigInvalid] = ()) -> None:
        """Align owned states with a new configuration generation.

        Unchanged alarms keep their state, changed alarms restart at
        INSUFFICIENT_DATA, removed alarms are dropped. Definitions that
        failed validation are exposed as INSUFFICIENT_DATA with the
        validation error as reason.
        """
        configs = {alarm.id: alarm for alarm in alarms}
        states: dict[str, AlarmState] = {}
        for alarm_id, alarm in configs.items():
            previous = self._states.get(alarm_id)
            if previous is not None and self._configs.get(alarm_id) == alarm:
                states[alarm_id] = previous
            else:
                states[alarm_id] = AlarmState(alarm_id=alarm_id)
        invalid: dict[str, str] = {}
        for error in errors:
            if error.kind == "alarm" and error.definition_id and error.definition_id not in configs:
                invalid[error.definition_id] = error.reason
                states[error.definition_id] = AlarmState(
                    alarm_id=error.definition_id,
                    reason=f"Invalid configuration: {error.reason}",
                )
        self._configs = configs
        self._states = states
        self._invalid = invalid

    def restore(self, states: Mapping[str, AlarmState]) -> int:
        """Adopt checkpointed states for currently configured alarms."""
        restored = 0
        for alarm_id, state in states.items():
            alarm = self._configs.get(alarm_id)
            if alarm is None:
                continue
            self._states[alarm_id] = replace(
                state, recent=state.recent[-alarm.evaluation_periods :]
            )
            restored += 1
        return restored

    def state(self, alarm_id: str) -> AlarmState | None:
        return self._states.get(alarm_id)

    def states(self) -> dict[str, AlarmState]:
        return dict(self._states)

    @property
    def invalid(self) -> dict[str, str]:
        return dict(self._invalid)

    def evaluate(self, alarm: AlarmConfig, now: float | None = None) -> list[AlarmTransition]:
        """Evaluate every due period of one alarm, strictly in order.

        Returns:
            Transitions produced, possibly empty. If a period exceeds its
            budget, evaluation stops there and the period is retried on the
            next call; transitions of earlier periods are still returned.
        """
        now = self._clock() if now is None else now
        cycle = EvaluationCycle()
        self._run(alarm, now, cycle)
        return cycle.transitions

    def evaluate_all(
        self, alarms: Iterable[AlarmConfig], now: float | None = None
    ) -> EvaluationCycle:
        """Evaluate each alarm independently; one failure never blocks others."""
        now = self._clock() if now is None else now
        cycle = EvaluationCycle()
        for alarm in alarms:
            try:
                self._run(alarm, now, cycle)
            except Exception as exc:
                logger.exception("Alarm %s evaluation failed", alarm.id)
                cycle.errors[alarm.id] = f"{type(exc).__name__}: {exc}"
        return cycle

    def _run(self, alarm: AlarmConfig, now: float, cycle: EvaluationCycle) -> None:
        self._configs.setdefault(alarm.id, alarm)
        state = self._states.get(alarm.id) or AlarmState(alarm_id=alarm.id)
        try:
            for period_start in due_periods(alarm, state, now):
                state, transition = step(alarm, state, period_start, self._aggregator, now)
                if transition is not None:
                    cycle.transitions.append(transition)
        except EvaluationTimeout as exc:
            logger.warning("Alarm %s skipped this tick: %s", alarm.id, exc)
            cycle.timeouts.append(exc)
        finally:
            self._states[alarm.id] = state
