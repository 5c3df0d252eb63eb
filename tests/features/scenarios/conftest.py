"""BDD step definitions for engine scenarios.

Steps collect alarms, rules, sinks and samples into the context; the
engine is built on the first When step and closed at teardown.
"""

from collections.abc import Iterator

import pytest
from pytest_bdd import given, parsers, then, when
from tests.features.scenarios.steps_helpers import (
    EngineScenarioContext,
    parse_values,
    run_async,
)
from tests.helpers import (
    CPU,
    GC_PAUSE,
    HEAP,
    cpu_alarm,
    gc_pause_alarm,
    heap_alarm,
    period_samples,
)

from gcwatch.adapters.sinks.recording import RecordingSink
from gcwatch.core.models import AlarmRef, AlarmStateValue, Combinator, CorrelationRule


@pytest.fixture
def ctx() -> Iterator[EngineScenarioContext]:
    """Fresh scenario context for each test."""
    context = EngineScenarioContext()
    yield context
    if context.engine is not None:
        run_async(context.engine.close())


# === Definitions ===
@given(parsers.parse("evaluation periods of {seconds:g} seconds"))
def step_period(ctx: EngineScenarioContext, seconds: float) -> None:
    ctx.period = seconds


@given(parsers.parse("a heap alarm needing {m:d} of {n:d} breaches"))
def step_heap_alarm(ctx: EngineScenarioContext, m: int, n: int) -> None:
    ctx.alarms.append(
        heap_alarm(evaluation_periods=n, datapoints_to_alarm=m, period=ctx.period)
    )


@given("a GC pause alarm")
def step_gc_pause_alarm(ctx: EngineScenarioContext) -> None:
    ctx.alarms.append(gc_pause_alarm(period=ctx.period))


@given(parsers.parse("a GC pause alarm needing {m:d} of {n:d} breaches"))
def step_gc_pause_alarm_needing(ctx: EngineScenarioContext, m: int, n: int) -> None:
    ctx.alarms.append(
        gc_pause_alarm(evaluation_periods=n, datapoints_to_alarm=m, period=ctx.period)
    )


@given("a CPU alarm")
def step_cpu_alarm(ctx: EngineScenarioContext) -> None:
    ctx.alarms.append(cpu_alarm(period=ctx.period))


@given(parsers.parse('a rule "{rule_id}" requiring {combinator} of "{first}" and "{second}"'))
def step_rule(
    ctx: EngineScenarioContext, rule_id: str, combinator: str, first: str, second: str
) -> None:
    ctx.rules.append(
        CorrelationRule(
            id=rule_id,
            signals=(AlarmRef(first), AlarmRef(second)),
            combinator=Combinator(combinator),
            classification=rule_id,
            suggested_action="restart",
        )
    )


@given(
    parsers.parse(
        'a rule "{rule_id}" requiring "{first}" then "{second}" within {seconds:g} seconds'
    )
)
def step_sequence_rule(
    ctx: EngineScenarioContext, rule_id: str, first: str, second: str, seconds: float
) -> None:
    ctx.rules.append(
        CorrelationRule(
            id=rule_id,
            signals=(AlarmRef(first), AlarmRef(second)),
            combinator=Combinator.SEQUENCE,
            classification=rule_id,
            suggested_action="dump threads",
            within_seconds=seconds,
        )
    )


@given(parsers.parse('a sink "{name}" that fails {count:d} times'))
def step_flaky_sink(ctx: EngineScenarioContext, name: str, count: int) -> None:
    ctx.sinks[name] = RecordingSink(name, failures=count)


# === Samples ===
@given(parsers.parse("heap windows of {values}"))
def step_heap_windows(ctx: EngineScenarioContext, values: str) -> None:
    ctx.samples.extend(period_samples(HEAP, parse_values(values), period=ctx.period))


@given(parsers.parse("CPU windows of {values}"))
def step_cpu_windows(ctx: EngineScenarioContext, values: str) -> None:
    ctx.samples.extend(period_samples(CPU, parse_values(values), period=ctx.period))


@given(parsers.parse("GC pause windows of {value:g} for {periods:d} periods"))
def step_gc_pause_windows(ctx: EngineScenarioContext, value: float, periods: int) -> None:
    ctx.samples.extend(period_samples(GC_PAUSE, [value] * periods, period=ctx.period))


# === Actions ===
@when(parsers.parse("the engine evaluates {periods:d} periods"))
def step_evaluate(ctx: EngineScenarioContext, periods: int) -> None:
    run_async(ctx.evaluate(periods))


@when("queued events are dispatched")
def step_flush(ctx: EngineScenarioContext) -> None:
    ctx.reports.extend(run_async(ctx.build().flush()))


# === Outcomes ===
@then(parsers.parse('alarm "{alarm_id}" is {state}'))
def step_alarm_state(ctx: EngineScenarioContext, alarm_id: str, state: str) -> None:
    current = ctx.build().alarm_state(alarm_id)
    assert current is not None
    assert current.state is AlarmStateValue(state)


@then(parsers.parse('alarm "{alarm_id}" was not {state} before period {period:d}'))
def step_alarm_not_before(
    ctx: EngineScenarioContext, alarm_id: str, state: str, period: int
) -> None:
    earlier = [states[alarm_id] for states in ctx.history[: period - 1]]
    assert len(earlier) == period - 1
    assert AlarmStateValue(state) not in earlier


@then(parsers.parse("{count:d} transition to {state} was emitted"))
def step_transition_count(ctx: EngineScenarioContext, count: int, state: str) -> None:
    transitions = [
        t for r in ctx.results for t in r.transitions if t.current is AlarmStateValue(state)
    ]
    assert len(transitions) == count


@then(
    parsers.re(
        r'exactly (?P<count>\d+) RCA events? classified "(?P<name>[^"]+)" (?:was|were) emitted'
    )
)
def step_rca_count(ctx: EngineScenarioContext, count: str, name: str) -> None:
    events = [e for r in ctx.results for e in r.rca_events if e.classification == name]
    assert len(events) == int(count)


@then(parsers.parse("{count:d} correlation episode is open"))
def step_open_episodes(ctx: EngineScenarioContext, count: int) -> None:
    assert len(ctx.build().active_episodes()) == count


@then(parsers.parse('sink "{name}" received {count:d} event after {attempts:d} attempts'))
def step_sink_received(ctx: EngineScenarioContext, name: str, count: int, attempts: int) -> None:
    sink = ctx.sinks[name]
    assert len(sink.events) == count
    assert sink.attempts == attempts
    assert [r.delivered for r in ctx.reports] == [[name]]


@then(parsers.parse("{count:d} retry delays were recorded"))
def step_retry_delays(ctx: EngineScenarioContext, count: int) -> None:
    assert len(ctx.sleep.delays) == count
