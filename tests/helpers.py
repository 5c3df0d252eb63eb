"""Builders shared by unit, integration and feature tests."""

from collections.abc import Sequence

from gcwatch.core.models import (
    AlarmConfig,
    Comparison,
    MetricKey,
    Sample,
    Statistic,
    TreatMissingData,
)

# Epoch-aligned to 300s periods.
T0 = 1_800_000_000.0
PERIOD = 300.0

HEAP = MetricKey("payments/jvm", "heap_used_ratio", {"host": "app-1"})
GC_PAUSE = MetricKey("payments/jvm", "gc_pause_ms", {"host": "app-1"})
CPU = MetricKey("payments/jvm", "cpu_utilization", {"host": "app-1"})


class FakeClock:
    """Manually advanced clock, callable like ``time.time``."""

    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, now: float) -> float:
        self.now = now
        return now


class RecordingSleep:
    """Awaitable replacement for asyncio.sleep that records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def period_samples(
    key: MetricKey,
    values: Sequence[float | None],
    *,
    start: float = T0,
    period: float = PERIOD,
    per_period: int = 5,
) -> list[Sample]:
    """One constant-valued batch of samples per period; None leaves a gap."""
    samples: list[Sample] = []
    step = period / per_period
    for index, value in enumerate(values):
        if value is None:
            continue
        base = start + index * period
        samples.extend(
            Sample(key=key, timestamp=base + j * step + 1, value=value) for j in range(per_period)
        )
    return samples


def heap_alarm(
    evaluation_periods: int = 3,
    datapoints_to_alarm: int = 3,
    treat_missing_data: TreatMissingData = TreatMissingData.MISSING,
    alarm_id: str = "heap-high",
    period: float = PERIOD,
) -> AlarmConfig:
    return AlarmConfig(
        id=alarm_id,
        key=HEAP,
        statistic=Statistic.AVG,
        comparison=Comparison.GT,
        threshold=0.8,
        period=period,
        evaluation_periods=evaluation_periods,
        datapoints_to_alarm=datapoints_to_alarm,
        treat_missing_data=treat_missing_data,
    )


def gc_pause_alarm(
    alarm_id: str = "gc-pause-high",
    evaluation_periods: int = 1,
    datapoints_to_alarm: int = 1,
    period: float = PERIOD,
) -> AlarmConfig:
    return AlarmConfig(
        id=alarm_id,
        key=GC_PAUSE,
        statistic=Statistic.P99,
        comparison=Comparison.GT,
        threshold=500.0,
        period=period,
        evaluation_periods=evaluation_periods,
        datapoints_to_alarm=datapoints_to_alarm,
    )


def cpu_alarm(alarm_id: str = "cpu-high", period: float = PERIOD) -> AlarmConfig:
    return AlarmConfig(
        id=alarm_id,
        key=CPU,
        statistic=Statistic.AVG,
        comparison=Comparison.GT,
        threshold=90.0,
        period=period,
        evaluation_periods=1,
        datapoints_to_alarm=1,
    )


