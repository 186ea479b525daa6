"""Utility functions for division-safe ratios and percent changes."""

from __future__ import annotations


def safe_divide(numerator: float, denominator: float) -> float:
    """
    Divide, returning 0.0 when the denominator is zero.
    """
    if not denominator:
        return 0.0
    return float(numerator) / float(denominator)


def percent_change(new_value: float, old_value: float) -> float:
    """
    Percent change from old to new. A move away from zero counts as +100%.
    """
    if old_value == 0:
        return 100.0 if new_value > 0 else 0.0
    return (new_value - old_value) / old_value * 100.0


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))
