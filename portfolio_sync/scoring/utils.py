"""Numeric helpers shared by the score calculators."""

import math
from typing import Any


def round_half_up(value: float, digits: int = 0) -> float:
    """Round halves away from zero for non-negative scores (2.5 -> 3, not 2)."""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def finite_or_zero(value: Any) -> float:
    """Coerce a metric to a finite non-negative float; anything else counts as 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def read_metric(metrics: Any, name: str, default: Any = None) -> Any:
    """Read a field from a mapping or an ORM object."""
    if isinstance(metrics, dict):
        return metrics.get(name, default)
    return getattr(metrics, name, default)
