"""
Bootstrap confidence intervals.

Three methods, following R's boot.ci():
- percentile: quantiles of the bootstrap distribution
- normal: bias-corrected normal approximation
- basic: basic (pivotal) bootstrap interval
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
from scipy import stats as sp_stats

from pymixed.core.exceptions import ValidationError

CI_METHODS = ('percentile', 'normal', 'basic')


def compute_ci(t0: float, t: NDArray, level: float, method: str) -> tuple[float, float]:
    """Confidence interval for one parameter.

    Args:
        t0: Estimate from the original fit.
        t: Bootstrap replicates (successful samples only).
        level: Confidence level in (0, 1).
        method: 'percentile', 'normal' or 'basic'.

    Returns:
        (lower, upper). NaN bounds when fewer than two replicates exist.
    """
    if not 0.0 < level < 1.0:
        raise ValidationError(f"level must be in (0, 1), got {level}")
    t = np.asarray(t, dtype=np.float64)
    if t.shape[0] < 2:
        return (np.nan, np.nan)
    alpha = 1.0 - level

    if method == 'percentile':
        return _ci_percentile(t, alpha)
    if method == 'normal':
        return _ci_normal(t0, t, alpha)
    if method == 'basic':
        return _ci_basic(t0, t, alpha)
    raise ValidationError(f"Unknown CI method: {method!r}; expected one of {CI_METHODS}")


def _ci_percentile(t: NDArray, alpha: float) -> tuple[float, float]:
    """CI = [Q(alpha/2), Q(1-alpha/2)]"""
    return (float(np.quantile(t, alpha / 2.0)),
            float(np.quantile(t, 1.0 - alpha / 2.0)))


def _ci_normal(t0: float, t: NDArray, alpha: float) -> tuple[float, float]:
    """
    Normal approximation CI with bias correction.

    Centered at 2*t0 - mean(t) (bias-corrected), not at t0.
    """
    center = 2.0 * t0 - np.mean(t)
    se = np.std(t, ddof=1)
    z = sp_stats.norm.ppf(1.0 - alpha / 2.0)
    return (float(center - z * se), float(center + z * se))


def _ci_basic(t0: float, t: NDArray, alpha: float) -> tuple[float, float]:
    """
    Basic (pivotal) bootstrap CI.

    CI = [2*t0 - Q(1-alpha/2), 2*t0 - Q(alpha/2)]

    Note: upper quantile of bootstrap gives lower bound.
    """
    q_lo = np.quantile(t, alpha / 2.0)
    q_hi = np.quantile(t, 1.0 - alpha / 2.0)
    return (float(2.0 * t0 - q_hi), float(2.0 * t0 - q_lo))
