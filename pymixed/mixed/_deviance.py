"""
Profiled deviance computation for LMM and GLMM.

The profiled deviance is the objective function that the outer optimizer
minimizes over θ. For LMM, β and σ² are analytically profiled out,
leaving a function of θ only; given the blocked factor it costs one pass
over the diagonal entries. For GLMM, the Laplace approximation (or
adaptive Gauss-Hermite quadrature for a single scalar term) replaces the
marginal likelihood integral.

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), Sections 2-3.
"""

from __future__ import annotations

from typing import Callable

import numpy as np
from numpy.typing import NDArray
from numpy.polynomial.hermite_e import hermegauss

from pymixed.mixed._blocks import BlockedSystem
from pymixed.mixed._cholesky import update_L, logdet_re, logdet_x, pwrss


def profiled_deviance(system: BlockedSystem, reml: bool = False) -> float:
    """Profiled ML (or REML) deviance read off a factored system.

    ML:   d(θ) = log|L_θ|² + n × [1 + log(2π × pwrss/n)] - Σ log wᵢ

    REML: d(θ) = log|L_θ|² + log|R_X|² + (n-p) × [1 + log(2π × pwrss/(n-p))] - Σ log wᵢ

    With prior weights the residual variance of observation i is σ²/wᵢ,
    so the Gaussian normalizing constant carries -log|W|.

    Args:
        system: A system on which update_L() has just been called.
        reml: If True, compute REML deviance; if False, ML deviance.

    Returns:
        Profiled deviance value (scalar to minimize).
    """
    n = system.n_obs
    p = system.n_fixed
    r2 = pwrss(system)
    ld = logdet_re(system)
    if system.sqrt_w is not None:
        ld -= 2.0 * np.sum(np.log(system.sqrt_w))
    if reml:
        df = n - p
        return float(ld + logdet_x(system) + df * (1.0 + np.log(2.0 * np.pi * r2 / df)))
    return float(ld + n * (1.0 + np.log(2.0 * np.pi * r2 / n)))


def profiled_deviance_lmm(system: BlockedSystem, theta, reml: bool = False) -> float:
    """Factor the system at θ and return the profiled deviance.

    Raises:
        InvalidParameter: Wrong length or non-finite θ.
        NonPositiveDefinite: The scaled system is not positive definite.
    """
    update_L(system, theta)
    return profiled_deviance(system, reml=reml)


def sigma_hat(system: BlockedSystem, reml: bool = False) -> float:
    """Profiled residual standard deviation at the current factor."""
    df = system.n_obs - system.n_fixed if reml else system.n_obs
    return float(np.sqrt(pwrss(system) / df))


def laplace_deviance(devresid_sum: float, u: list[NDArray], logdet: float) -> float:
    """Laplace-approximated deviance of a GLMM.

    d(θ, β) = Σ deviance residuals + ‖u‖² + log|L_θ|²

    evaluated at the conditional modes u from PIRLS.
    """
    penalty = sum(float(u_j @ u_j) for u_j in u)
    return float(devresid_sum + penalty + logdet)


def normalized_gauss_hermite(n_points: int) -> tuple[NDArray, NDArray]:
    """Nodes and weights for ∫ f(z) φ(z) dz with φ the standard normal density.

    The weights sum to 1.
    """
    z, w = hermegauss(n_points)
    return z, w / np.sqrt(2.0 * np.pi)


def agq_deviance(
    level_deviance: Callable[[NDArray], NDArray],
    u0: NDArray,
    sd: NDArray,
    n_points: int,
) -> float:
    """Adaptive Gauss-Hermite deviance for a single scalar random-effects term.

    The integral over each level's random effect is evaluated with
    quadrature nodes recentred on the conditional mode u0 and scaled by
    the conditional standard deviation sd = 1 / diag(L_11).

    Args:
        level_deviance: Maps spherical u (ℓ,) to per-level conditional
            deviance (ℓ,), i.e. the sum of deviance residuals of the level's
            observations plus u².
        u0: Conditional modes (ℓ,).
        sd: Conditional standard deviations (ℓ,).
        n_points: Number of quadrature nodes (odd).

    Returns:
        The AGQ deviance. With n_points == 1 this equals the Laplace value.
    """
    devc0 = level_deviance(u0)
    mult = np.zeros_like(devc0)
    z, w = normalized_gauss_hermite(n_points)
    for z_i, w_i in zip(z, w):
        if z_i == 0.0:
            mult += w_i
            continue
        devc = level_deviance(u0 + z_i * sd)
        mult += np.exp((z_i * z_i + devc0 - devc) / 2.0) * w_i
    return float(np.sum(devc0) - 2.0 * (np.sum(np.log(mult)) + np.sum(np.log(sd))))
