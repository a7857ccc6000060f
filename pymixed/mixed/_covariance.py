"""
Covariance parameterization: θ ↔ relative covariance factors.

For grouping factor k with v_k terms, the covariance of one level's
random effects is σ² T_k T_k' where T_k is a v_k × v_k lower-triangular
matrix. θ is the concatenation, in elimination order, of the lower
triangles of all T_k packed row by row:

    v = 2:  θ_k = [T[0,0], T[1,0], T[1,1]]

The full relative covariance factor is Λ = diag(Λ_1, ..., Λ_K) with
Λ_k = I_ℓ ⊗ T_k (level-major column order, see _reterms).

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), Section 2.2.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from pymixed.core.exceptions import InvalidParameter
from pymixed.mixed._reterms import ReTerm


def _tril_indices(v: int) -> tuple[NDArray, NDArray]:
    # np.tril_indices enumerates row by row, which is the packing order
    return np.tril_indices(v)


def theta_size(reterms: list[ReTerm]) -> int:
    """Total length of θ."""
    return sum(t.theta_size for t in reterms)


def check_theta(theta, reterms: list[ReTerm]) -> NDArray:
    """Validate θ for the given terms and return it as a float64 array.

    Raises:
        InvalidParameter: Wrong length or non-finite entries.
    """
    theta = np.asarray(theta, dtype=np.float64).ravel()
    expected = theta_size(reterms)
    if theta.shape[0] != expected:
        raise InvalidParameter(
            f"θ has length {theta.shape[0]}, expected {expected}",
            expected=expected,
            actual=theta.shape[0],
        )
    if not np.all(np.isfinite(theta)):
        raise InvalidParameter(
            "θ contains non-finite values",
            expected='finite values',
            actual=theta.copy(),
        )
    return theta


def lambda_factors(theta, reterms: list[ReTerm]) -> list[NDArray]:
    """Unpack θ into one lower-triangular T_k per term.

    Args:
        theta: Covariance parameter vector.
        reterms: Terms in elimination order.

    Returns:
        List of (v_k, v_k) lower-triangular arrays.

    Raises:
        InvalidParameter: Wrong length or non-finite θ.
    """
    theta = check_theta(theta, reterms)
    factors = []
    offset = 0
    for term in reterms:
        v = term.n_terms
        T = np.zeros((v, v), dtype=np.float64)
        T[_tril_indices(v)] = theta[offset:offset + term.theta_size]
        offset += term.theta_size
        factors.append(T)
    return factors


def lambda_matrix(T: NDArray, n_levels: int) -> sparse.csc_matrix:
    """Λ_k = I_ℓ ⊗ T_k as a sparse matrix."""
    return sparse.csc_matrix(sparse.kron(sparse.identity(n_levels), T))


def theta_lower_bounds(reterms: list[ReTerm]) -> NDArray:
    """Lower bounds for θ.

    Diagonal elements of T_k must be ≥ 0 (variance is non-negative).
    Off-diagonal elements are unbounded (correlations can be negative).
    """
    bounds = []
    for term in reterms:
        rows, cols = _tril_indices(term.n_terms)
        bounds.append(np.where(rows == cols, 0.0, -np.inf))
    return np.concatenate(bounds).astype(np.float64)


def theta_start(reterms: list[ReTerm]) -> NDArray:
    """Starting values for θ.

    Diagonal elements start at 1.0 (σ_b/σ = 1, equal variance partition).
    Off-diagonal elements start at 0.0 (no initial correlation).
    """
    starts = []
    for term in reterms:
        rows, cols = _tril_indices(term.n_terms)
        starts.append(np.where(rows == cols, 1.0, 0.0))
    return np.concatenate(starts).astype(np.float64)


def theta_diagonal_mask(reterms: list[ReTerm]) -> NDArray:
    """Boolean mask of θ entries that sit on a diagonal of some T_k."""
    return np.isfinite(theta_lower_bounds(reterms))


def theta_names(reterms: list[ReTerm]) -> list[str]:
    """Readable names for the θ entries, e.g. 'subject:(Intercept)' or
    'subject:time,(Intercept)' for an off-diagonal element."""
    names = []
    for term in reterms:
        labels = term.term_labels()
        for r, c in zip(*_tril_indices(term.n_terms)):
            if r == c:
                names.append(f"{term.name}:{labels[r]}")
            else:
                names.append(f"{term.name}:{labels[r]},{labels[c]}")
    return names


def covariance_summary(T: NDArray, sigma_sq: float) -> tuple[NDArray, NDArray, NDArray]:
    """Variances, standard deviations and correlations of one term.

    Args:
        T: Relative covariance factor (v, v).
        sigma_sq: Residual variance scale (1.0 for families without a
            dispersion parameter).

    Returns:
        (variances (v,), std_devs (v,), correlation matrix (v, v)).
        Correlations involving a zero-variance term are reported as 0.
    """
    cov = sigma_sq * (T @ T.T)
    variances = np.diag(cov).copy()
    std_devs = np.sqrt(np.maximum(variances, 0.0))
    denom = np.outer(std_devs, std_devs)
    with np.errstate(divide='ignore', invalid='ignore'):
        corr = np.where(denom > 0, cov / np.where(denom > 0, denom, 1.0), 0.0)
    np.fill_diagonal(corr, 1.0)
    return variances, std_devs, corr
