"""
Utility functions for nmapy.

This module provides statistical utilities and helper functions
used throughout the nmapy package.
"""

from __future__ import annotations
from typing import Optional, Tuple
import numpy as np
from scipy import stats


# ============================================================================
# Statistical Utilities
# ============================================================================

def z_score(level: float = 0.95) -> float:
    """
    Get z-score for a confidence level.

    Args:
        level: Confidence level (0 to 1)

    Returns:
        z-score for two-tailed confidence interval
    """
    return stats.norm.ppf((1 + level) / 2)


def se_from_ci(
    ci_lower: float,
    ci_upper: float,
    level: float = 0.95,
    log_scale: bool = False
) -> float:
    """
    Compute standard error from confidence interval.

    Args:
        ci_lower: Lower CI bound
        ci_upper: Upper CI bound
        level: Confidence level
        log_scale: Whether the bounds are on the ratio scale and must be logged

    Returns:
        Standard error
    """
    z = z_score(level)

    if log_scale:
        if ci_lower <= 0 or ci_upper <= 0:
            raise ValueError("CI bounds must be positive on the ratio scale")
        return (np.log(ci_upper) - np.log(ci_lower)) / (2 * z)
    else:
        return (ci_upper - ci_lower) / (2 * z)


def p_value_from_z(z: float, two_tailed: bool = True) -> float:
    """
    Compute p-value from z-score.

    Args:
        z: z-score
        two_tailed: Use two-tailed test

    Returns:
        p-value
    """
    if two_tailed:
        return float(2 * stats.norm.sf(abs(z)))
    else:
        return float(stats.norm.sf(z))


def p_value_from_chi2(q: float, df: int) -> float:
    """
    Upper-tail chi-squared p-value.

    Args:
        q: Test statistic
        df: Degrees of freedom

    Returns:
        p-value (nan when df < 1)
    """
    if df < 1:
        return np.nan
    return float(stats.chi2.sf(max(q, 0.0), df))


# ============================================================================
# Effect Size Helpers
# ============================================================================

def hedges_correction(n: int) -> float:
    """
    Small-sample correction factor J for the standardized mean difference.

    Args:
        n: Total sample size

    Returns:
        J = 1 - 3 / (4n - 9)
    """
    return 1 - 3 / (4 * n - 9)


# ============================================================================
# Formatting
# ============================================================================

def format_estimate(
    estimate: float,
    se: Optional[float] = None,
    ci: Optional[Tuple[float, float]] = None,
    decimals: int = 3,
    exponentiate: bool = False
) -> str:
    """
    Format estimate with optional SE or CI.

    Args:
        estimate: Point estimate
        se: Standard error (optional)
        ci: Confidence interval (optional)
        decimals: Number of decimal places
        exponentiate: Whether to exponentiate

    Returns:
        Formatted string
    """
    if exponentiate:
        estimate = np.exp(estimate)
        if ci:
            ci = (np.exp(ci[0]), np.exp(ci[1]))

    result = f"{estimate:.{decimals}f}"

    if se is not None:
        result += f" (SE: {se:.{decimals}f})"

    if ci is not None:
        result += f" [{ci[0]:.{decimals}f}, {ci[1]:.{decimals}f}]"

    return result


def format_p_value(p: float, threshold: float = 0.001) -> str:
    """Format p-value with appropriate precision."""
    if p is None or np.isnan(p):
        return "p = NA"
    if p < threshold:
        return f"p < {threshold}"
    return f"p = {p:.3f}"
