"""Sample helper functions for push clients and collectors."""

import time
from collections.abc import Mapping

from gcwatch.core.models import MetricKey, Sample


def gauge(
    namespace: str,
    metric_name: str,
    value: float,
    dimensions: Mapping[str, str] | None = None,
    unit: str = "None",
    timestamp: float | None = None,
) -> Sample:
    """Create a gauge sample (heap ratio, CPU percent, ...).

    Args:
        namespace: Producer namespace (e.g., "payments/jvm")
        metric_name: Metric name (e.g., "heap_used_ratio")
        value: Current gauge value
        dimensions: Optional dimension labels
        unit: Unit of the value (e.g., "Percent", "Milliseconds")
        timestamp: Sample time; defaults to now

    Returns:
        Sample with the given or current timestamp
    """
    return Sample(
        key=MetricKey(namespace, metric_name, dimensions or {}),
        timestamp=time.time() if timestamp is None else timestamp,
        value=value,
        unit=unit,
    )


def counter(
    namespace: str,
    metric_name: str,
    value: float = 1.0,
    dimensions: Mapping[str, str] | None = None,
    timestamp: float | None = None,
) -> Sample:
    """Create a count sample (GC count, allocation failures, ...).

    Args:
        namespace: Producer namespace
        metric_name: Metric name (e.g., "gc_count")
        value: Increment value (default: 1.0)
        dimensions: Optional dimension labels
        timestamp: Sample time; defaults to now

    Returns:
        Sample with unit "Count"
    """
    return gauge(namespace, metric_name, value, dimensions, "Count", timestamp)
