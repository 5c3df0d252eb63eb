"""Tests for sample helper functions."""

import pytest

from gcwatch.core.metrics import counter, gauge
from gcwatch.core.models import MetricKey

pytestmark = [pytest.mark.tier(0), pytest.mark.tra("Core.MetricsHelpers")]


class TestGauge:
    """Tests for gauge()."""

    @pytest.mark.core
    def test_builds_sample(self) -> None:
        sample = gauge(
            "payments/jvm", "heap_used_ratio", 0.82, {"host": "app-1"}, timestamp=100.0
        )

        assert sample.key == MetricKey("payments/jvm", "heap_used_ratio", {"host": "app-1"})
        assert sample.value == 0.82
        assert sample.timestamp == 100.0
        assert sample.unit == "None"

    @pytest.mark.core
    def test_defaults_timestamp_to_now(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("gcwatch.core.metrics.time.time", lambda: 42.0)

        assert gauge("ns", "m", 1.0).timestamp == 42.0


class TestCounter:
    """Tests for counter()."""

    @pytest.mark.core
    def test_count_unit_and_default_increment(self) -> None:
        sample = counter("payments/jvm", "gc_count", timestamp=1.0)

        assert sample.value == 1.0
        assert sample.unit == "Count"
        assert sample.key.dimensions == ()
