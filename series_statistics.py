"""
Series Statistics

Shared numeric primitives used by every planning engine:
mean, population standard deviation, coefficient of variation,
confidence / service-level z multipliers and unit rounding.

Degenerate inputs never raise: an empty series has mean and std of 0,
and the coefficient of variation of a zero-mean series is defined as 0.
"""

import math

import numpy as np
from scipy.stats import norm

from business_rules import FORECAST_RULES


def _as_array(values) -> np.ndarray:
    return np.asarray(list(values) if not isinstance(values, np.ndarray) else values, dtype=np.float64)


def calculate_mean(values) -> float:
    """Arithmetic mean; 0.0 for an empty series."""
    arr = _as_array(values)
    if arr.size == 0:
        return 0.0
    return float(arr.mean())


def calculate_std_dev(values) -> float:
    """Population standard deviation (divides by n); 0.0 for an empty series."""
    arr = _as_array(values)
    if arr.size == 0:
        return 0.0
    return float(arr.std(ddof=0))


def calculate_cv(values) -> float:
    """
    Coefficient of variation as a ratio (std / mean).

    Returns 0.0 when the mean is not positive, so that all-zero series
    do not propagate NaN or infinity into downstream rankings.
    """
    mean = calculate_mean(values)
    if mean <= 0:
        return 0.0
    return calculate_std_dev(values) / mean


def calculate_cv_percent(values) -> float:
    """Coefficient of variation expressed as a percentage."""
    return calculate_cv(values) * 100.0


def get_z_multiplier(confidence_level: float) -> float:
    """
    Map a confidence level (percent) to the z multiplier used for forecast bands.

    Levels are bucketed downward (e.g. 97% uses the 95% multiplier). Levels
    below the lowest bucket fall back to the 95% multiplier.
    """
    for min_level, z_value in FORECAST_RULES["confidence_z_scores"]:
        if confidence_level >= min_level:
            return z_value
    return FORECAST_RULES["default_z_multiplier"]


def get_service_level_z(service_level: float) -> float:
    """
    Standard normal quantile for a target service level.

    Accepts a fraction (0.95) or a percentage (95).
    """
    level = service_level / 100.0 if service_level > 1 else service_level
    if level <= 0 or level >= 1:
        return 0.0
    return float(norm.ppf(level))


def round_half_up(value: float) -> float:
    """Round to the nearest unit with halves rounded up (2.5 -> 3), unlike Python's banker's rounding."""
    return float(math.floor(value + 0.5))
