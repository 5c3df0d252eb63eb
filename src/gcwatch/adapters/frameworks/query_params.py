"""Query parameter parsing for the ASGI query surface."""

import math

from gcwatch.core.models import AlarmStateValue, Statistic

# Valid log levels for validation
VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

DIMENSION_PREFIX = "dim."


def _first(params: dict[str, list[str]], name: str) -> str | None:
    values = params.get(name)
    return values[0] if values else None


def _parse_since_param(params: dict[str, list[str]]) -> float:
    """Parse and validate the 'since' query parameter.

    Returns:
        Timestamp as float, defaulting to 0.0 if invalid or missing.
        Rejects negative, NaN, and infinite values, returning 0.0 for these cases.
    """
    try:
        value = float(_first(params, "since") or "0")
    except ValueError:
        return 0.0
    if value < 0 or not math.isfinite(value):
        return 0.0
    return value


def _parse_level_param(params: dict[str, list[str]]) -> str | None:
    """Parse and validate the 'level' query parameter.

    Returns:
        Validated level string (uppercase) or None if invalid/missing.
    """
    level_raw = _first(params, "level")
    if level_raw and level_raw.upper() in VALID_LEVELS:
        return level_raw.upper()
    return None


def _parse_state_param(params: dict[str, list[str]]) -> AlarmStateValue | None:
    """Parse the optional 'state' filter; unknown values are ignored."""
    raw = _first(params, "state")
    if not raw:
        return None
    try:
        return AlarmStateValue(raw.upper())
    except ValueError:
        return None


def _parse_statistic_param(params: dict[str, list[str]]) -> Statistic:
    """Parse the 'statistic' parameter, defaulting to avg.

    Raises:
        ValueError: Unknown statistic.
    """
    raw = _first(params, "statistic") or Statistic.AVG.value
    return Statistic(raw.lower())


def _parse_period_param(params: dict[str, list[str]]) -> float:
    """Parse the required positive 'period' parameter in seconds.

    Raises:
        ValueError: Missing, non-numeric, non-finite or not positive.
    """
    raw = _first(params, "period")
    if raw is None:
        raise ValueError("period is required")
    value = float(raw)
    if value <= 0 or not math.isfinite(value):
        raise ValueError("period must be a positive number of seconds")
    return value


def _parse_dimensions(params: dict[str, list[str]]) -> dict[str, str]:
    """Collect ``dim.<name>=<value>`` parameters into a dimension mapping."""
    return {
        name[len(DIMENSION_PREFIX) :]: values[0]
        for name, values in params.items()
        if name.startswith(DIMENSION_PREFIX) and len(name) > len(DIMENSION_PREFIX) and values
    }
