"""Deterministic window statistics.

Percentiles use the nearest-rank method on the ascending-sorted values:
``rank = ceil(p / 100 * n)`` (1-based). No interpolation is performed, so a
percentile is always one of the observed values and results are identical
across runs and sample arrival orders.
"""

import math
from collections.abc import Sequence

from gcwatch.core.models import Statistic


def nearest_rank(sorted_values: Sequence[float], pct: float) -> float:
    """Return the ``pct`` percentile of pre-sorted values by nearest rank.

    Args:
        sorted_values: Values sorted ascending. Must not be empty.
        pct: Percentile in (0, 100].

    Returns:
        The value at rank ``ceil(pct / 100 * n)``.
    """
    if not sorted_values:
        raise ValueError("nearest_rank requires at least one value")
    if not 0 < pct <= 100:
        raise ValueError(f"percentile must be in (0, 100], got {pct}")
    rank = math.ceil(pct / 100 * len(sorted_values))
    return sorted_values[max(rank, 1) - 1]


def compute(statistic: Statistic, values: Sequence[float]) -> float:
    """Compute ``statistic`` over ``values``.

    The result does not depend on the order of ``values``; sums are taken
    over the sorted values so floating-point rounding is order independent
    too.
    """
    if not values:
        raise ValueError("cannot compute a statistic over no values")
    ordered = sorted(values)
    if statistic is Statistic.COUNT:
        return float(len(ordered))
    if statistic is Statistic.SUM:
        return math.fsum(ordered)
    if statistic is Statistic.AVG:
        return math.fsum(ordered) / len(ordered)
    if statistic is Statistic.MAX:
        return ordered[-1]
    if statistic is Statistic.MIN:
        return ordered[0]
    if statistic is Statistic.P95:
        return nearest_rank(ordered, 95)
    if statistic is Statistic.P99:
        return nearest_rank(ordered, 99)
    raise ValueError(f"unsupported statistic: {statistic}")
