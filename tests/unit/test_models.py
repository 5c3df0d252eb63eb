"""Tests for core domain models."""

import pytest

from gcwatch.core.exceptions import ConfigInvalid
from gcwatch.core.models import (
    AlarmConfig,
    AlarmRef,
    AlarmState,
    AlarmStateValue,
    AlarmTransition,
    Combinator,
    Comparison,
    CorrelationRule,
    KeyPattern,
    MetricKey,
    MetricPredicate,
    RCAEvent,
    RetentionPolicy,
    RouteRule,
    Severity,
    Statistic,
    TrendPredicate,
    Window,
)

pytestmark = [pytest.mark.tier(0), pytest.mark.tra("Core.Models")]


class TestMetricKey:
    """Tests for MetricKey identity."""

    @pytest.mark.core
    def test_dimension_order_does_not_affect_equality(self) -> None:
        """Keys built from differently ordered dimensions are equal and hash alike."""
        a = MetricKey("payments/jvm", "heap_used_ratio", {"pool": "old", "host": "app-1"})
        b = MetricKey("payments/jvm", "heap_used_ratio", [("host", "app-1"), ("pool", "old")])

        assert a == b
        assert hash(a) == hash(b)

    @pytest.mark.core
    def test_canonical_rendering(self) -> None:
        """Canonical form lists dimensions sorted by name."""
        key = MetricKey("payments/jvm", "heap_used_ratio", {"pool": "old", "host": "app-1"})

        assert key.canonical == "payments/jvm/heap_used_ratio{host=app-1,pool=old}"

    @pytest.mark.core
    def test_canonical_without_dimensions(self) -> None:
        """Keys without dimensions render without braces."""
        assert MetricKey("ns", "m").canonical == "ns/m"

    @pytest.mark.core
    def test_dimension_lookup(self) -> None:
        """dimension() returns a value or None."""
        key = MetricKey("ns", "m", {"host": "a"})

        assert key.dimension("host") == "a"
        assert key.dimension("pool") is None


class TestKeyPattern:
    """Tests for KeyPattern matching."""

    @pytest.mark.core
    def test_matches_wildcard_dimension(self) -> None:
        """A glob dimension value matches every concrete host."""
        pattern = KeyPattern("payments/jvm", "heap_used_ratio", {"host": "app-*"})

        assert pattern.matches(MetricKey("payments/jvm", "heap_used_ratio", {"host": "app-1"}))
        assert pattern.matches(MetricKey("payments/jvm", "heap_used_ratio", {"host": "app-2"}))
        assert not pattern.matches(MetricKey("payments/jvm", "heap_used_ratio", {"host": "db-1"}))

    @pytest.mark.core
    def test_extra_dimensions_on_key_are_allowed(self) -> None:
        """Dimensions the pattern does not name are ignored."""
        pattern = KeyPattern("*/jvm", "heap_used_ratio")

        assert pattern.matches(MetricKey("orders/jvm", "heap_used_ratio", {"pool": "old"}))

    @pytest.mark.core
    def test_missing_dimension_does_not_match(self) -> None:
        """A key lacking a named dimension does not match."""
        pattern = KeyPattern("ns", "m", {"host": "*"})

        assert not pattern.matches(MetricKey("ns", "m"))


class TestComparisonAndSeverity:
    """Tests for enums with behaviour."""

    @pytest.mark.core
    @pytest.mark.parametrize(
        ("comparison", "value", "expected"),
        [
            (Comparison.GT, 0.8, False),
            (Comparison.GE, 0.8, True),
            (Comparison.LT, 0.7, True),
            (Comparison.LE, 0.9, False),
        ],
    )
    def test_apply(self, comparison: Comparison, value: float, expected: bool) -> None:
        """Comparison.apply checks value against threshold 0.8."""
        assert comparison.apply(value, 0.8) is expected

    @pytest.mark.core
    def test_severity_rank_order(self) -> None:
        """info < warning < critical."""
        assert Severity.INFO.rank < Severity.WARNING.rank < Severity.CRITICAL.rank


class TestAlarmConfig:
    """Tests for AlarmConfig validation."""

    def _alarm(self, **overrides) -> AlarmConfig:
        values = {
            "id": "heap-high",
            "key": MetricKey("ns", "heap"),
            "statistic": Statistic.AVG,
            "comparison": Comparison.GT,
            "threshold": 0.8,
            "period": 300.0,
            "evaluation_periods": 3,
            "datapoints_to_alarm": 2,
        }
        values.update(overrides)
        return AlarmConfig(**values)

    @pytest.mark.core
    def test_valid_alarm(self) -> None:
        """A well formed alarm exposes its namespace."""
        assert self._alarm().namespace == "ns"

    @pytest.mark.core
    @pytest.mark.parametrize(
        "overrides",
        [
            {"id": ""},
            {"period": 0},
            {"evaluation_periods": 0},
            {"datapoints_to_alarm": 0},
            {"datapoints_to_alarm": 4},
        ],
    )
    def test_invalid_alarm_raises_config_invalid(self, overrides: dict) -> None:
        """Invalid definitions raise ConfigInvalid."""
        with pytest.raises(ConfigInvalid):
            self._alarm(**overrides)

    @pytest.mark.core
    def test_config_invalid_carries_definition_id(self) -> None:
        """The error names the offending alarm."""
        with pytest.raises(ConfigInvalid) as exc_info:
            self._alarm(datapoints_to_alarm=5)

        assert exc_info.value.definition_id == "heap-high"
        assert exc_info.value.kind == "alarm"


class TestCorrelationModels:
    """Tests for signals, rules and events."""

    @pytest.mark.core
    def test_sequence_requires_within(self) -> None:
        """SEQUENCE rules without a window are rejected."""
        with pytest.raises(ConfigInvalid):
            CorrelationRule(
                id="seq",
                signals=(AlarmRef("a"), AlarmRef("b")),
                combinator=Combinator.SEQUENCE,
                classification="gc-thrashing",
            )

    @pytest.mark.core
    def test_rule_requires_signals(self) -> None:
        """A rule without signals is rejected."""
        with pytest.raises(ConfigInvalid):
            CorrelationRule(id="r", signals=(), combinator=Combinator.ALL, classification="x")

    @pytest.mark.core
    def test_rule_alarm_ids_and_predicates(self) -> None:
        """alarm_ids lists referenced alarms; has_predicates spots metric signals."""
        predicate = MetricPredicate(
            MetricKey("ns", "cpu"), Statistic.AVG, 60.0, Comparison.GT, 90.0
        )
        rule = CorrelationRule(
            id="r",
            signals=(AlarmRef("a"), predicate),
            combinator=Combinator.ANY,
            classification="x",
        )

        assert rule.alarm_ids == frozenset({"a"})
        assert rule.has_predicates

    @pytest.mark.core
    def test_trend_validation(self) -> None:
        """Trends need two periods and a tolerance in (0, 1]."""
        with pytest.raises(ConfigInvalid):
            TrendPredicate(MetricKey("ns", "heap"), 300.0, periods=1)
        with pytest.raises(ConfigInvalid):
            TrendPredicate(MetricKey("ns", "heap"), 300.0, tolerance=1.5)

    @pytest.mark.core
    def test_signal_ids_are_stable(self) -> None:
        """Signal ids derive from the signal definition or its name."""
        trend = TrendPredicate(MetricKey("ns", "heap"), 300.0)

        assert AlarmRef("a").signal_id == "alarm:a"
        assert trend.signal_id == TrendPredicate(MetricKey("ns", "heap"), 300.0).signal_id
        assert TrendPredicate(MetricKey("ns", "heap"), 300.0, name="heap").signal_id == "trend:heap"

    @pytest.mark.core
    def test_dedup_keys(self) -> None:
        """Transitions dedup on alarm and new state, RCA events on rule."""
        transition = AlarmTransition(
            alarm_id="a",
            previous=AlarmStateValue.OK,
            current=AlarmStateValue.ALARM,
            timestamp=1.0,
            period_start=0.0,
            reason="r",
        )
        event = RCAEvent(
            rule_id="leak",
            classification="memory-leak",
            triggering_alarms=frozenset(),
            timestamp=1.0,
        )

        assert transition.dedup_key == "alarm:a:ALARM"
        assert event.dedup_key == "rca:leak"


class TestMiscModels:
    """Tests for small value objects."""

    @pytest.mark.core
    def test_window_closed(self) -> None:
        """A window is closed once now reaches its end."""
        window = Window(MetricKey("ns", "m"), 600.0, 300.0, Statistic.AVG, 1.0, 1)

        assert window.period_end == 900.0
        assert not window.is_closed(899.9)
        assert window.is_closed(900.0)

    @pytest.mark.core
    def test_retention_floor(self) -> None:
        """The floor is now minus max age."""
        assert RetentionPolicy(max_age_seconds=900).floor(1000.0) == 100.0

    @pytest.mark.core
    def test_retention_rejects_non_positive(self) -> None:
        with pytest.raises(ValueError):
            RetentionPolicy(max_age_seconds=0)

    @pytest.mark.core
    def test_alarm_state_breaches(self) -> None:
        """breaches counts only True slots."""
        state = AlarmState("a", recent=(True, None, False, True))

        assert state.breaches == 2
        assert state.state is AlarmStateValue.INSUFFICIENT_DATA

    @pytest.mark.core
    def test_route_matching(self) -> None:
        """Routes filter by kind, severity and namespace glob."""
        route = RouteRule(
            name="critical-payments",
            sinks=("pager",),
            namespace="payments/*",
            min_severity=Severity.CRITICAL,
            kinds=frozenset({"rca"}),
        )
        event = RCAEvent(
            rule_id="leak",
            classification="memory-leak",
            triggering_alarms=frozenset(),
            timestamp=1.0,
            namespace="payments/jvm",
        )
        warning = RCAEvent(
            rule_id="leak",
            classification="memory-leak",
            triggering_alarms=frozenset(),
            timestamp=1.0,
            namespace="payments/jvm",
            severity=Severity.WARNING,
        )

        assert route.matches(event)
        assert not route.matches(warning)
