"""
Penalized Iteratively Reweighted Least Squares (PIRLS) for GLMM.

For a GLMM with given θ (and hence Λ_θ), PIRLS iteratively finds the
conditional modes of the spherical random effects u (and, optionally, the
fixed effects β) by solving a sequence of penalized weighted least
squares problems on the blocked system.

This is the inner loop of GLMM estimation. The outer loop optimizes θ
(or (β, θ)) to minimize the Laplace or adaptive Gauss-Hermite deviance.

Every call starts cold from u = 0, so the objective seen by the outer
optimizer is a pure function of its argument.

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), Section 3.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import numpy as np
from numpy.typing import NDArray

from pymixed.core.exceptions import PIRLSDivergence
from pymixed.mixed._blocks import BlockedSystem, DiagonalBlock
from pymixed.mixed._cholesky import (
    update_L, fixef, ranef_spherical, logdet_re, random_effects_linear_predictor,
)
from pymixed.mixed._deviance import laplace_deviance, agq_deviance
from pymixed.mixed.families import Family

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PIRLSResult:
    """Result from PIRLS convergence.

    Attributes:
        beta: Fixed effects (p,).
        u: Spherical random effects per term, in elimination order.
        eta: Linear predictor Xβ + ZΛu (n,).
        mu: Fitted values on the response scale (n,).
        devresid_sum: Σ wt_i d(y_i, μ_i).
        penalty: ‖u‖².
        logdet: log|L_θ|² at the final weights.
        converged: Whether PIRLS met its tolerance.
        n_iter: Number of PIRLS iterations.
    """
    beta: NDArray
    u: list[NDArray]
    eta: NDArray
    mu: NDArray
    devresid_sum: float
    penalty: float
    logdet: float
    converged: bool
    n_iter: int

    @property
    def laplace(self) -> float:
        """Laplace-approximated deviance at the conditional modes."""
        return laplace_deviance(self.devresid_sum, self.u, self.logdet)


def _state(system, X, y, wt, family, beta, u):
    eta = X @ beta + random_effects_linear_predictor(system, u)
    mu = family.link.linkinv(eta)
    dev = float(np.sum(wt * family.unit_deviance(y, mu)))
    penalty = sum(float(u_j @ u_j) for u_j in u)
    return eta, mu, dev, penalty


def pirls(
    system: BlockedSystem,
    X: NDArray,
    y: NDArray,
    wt: NDArray,
    family: Family,
    theta: NDArray,
    beta: NDArray,
    vary_beta: bool = True,
    tol: float = 1e-8,
    max_iter: int = 100,
    max_halving: int = 10,
    from_response: bool = False,
) -> PIRLSResult:
    """Penalized IRLS for GLMM (inner loop).

    For given θ, finds conditional modes by iterating:

    1. Compute working response: z = η + (y - μ) / (dμ/dη)
    2. Compute working weights: w = wt (dμ/dη)² / V(μ)
    3. Reweight and factor the blocked system at θ
    4. Update β (if vary_beta) and u; halve the step while the
       penalized deviance increases
    5. Stop when the relative change in penalized deviance ≤ tol

    Args:
        system: Blocked system for this model; A is overwritten.
        X: Fixed effects design (n, p).
        y: Response (n,).
        wt: Prior weights (n,).
        family: Response family.
        theta: Covariance parameters (elimination order).
        beta: Fixed effects; starting value if vary_beta, else held fixed.
        vary_beta: Update β together with u.
        tol: Convergence tolerance on the relative penalized deviance change.
        max_iter: Maximum PIRLS iterations.
        max_halving: Maximum step halvings per iteration.
        from_response: Start from μ = family.initialize(y) instead of from
            β (used for the initial GLM fit).

    Returns:
        PIRLSResult with conditional modes and deviance components.

    Raises:
        PIRLSDivergence: Non-finite weights/fitted values, or step halving
            exhausted.
        NonPositiveDefinite: The reweighted system is not positive definite.
    """
    link = family.link
    beta = np.array(beta, dtype=np.float64)
    u = [np.zeros(t.n_columns) for t in system.reterms]

    if from_response:
        mu = family.initialize(y, wt)
        eta = link.link(mu)
        obj = np.inf
    else:
        eta = X @ beta
        mu = link.linkinv(eta)
        obj = float(np.sum(wt * family.unit_deviance(y, mu)))

    converged = False
    dev = penalty = np.nan
    iteration = 0

    for iteration in range(1, max_iter + 1):
        mu_eta = link.mu_eta(eta)
        w = wt * mu_eta ** 2 / family.variance(mu)
        z = eta + (y - mu) / mu_eta
        if not (np.all(np.isfinite(w)) and np.all(np.isfinite(z))):
            raise PIRLSDivergence(
                f"Non-finite working weights or response at iteration {iteration}",
                iterations=iteration,
                reason='nonfinite_weights',
            )

        system.reweight(np.sqrt(w), z)
        update_L(system, theta)
        beta_new = fixef(system) if vary_beta else beta
        u_new = ranef_spherical(system, beta_new)
        eta_new, mu_new, dev, penalty = _state(system, X, y, wt, family, beta_new, u_new)
        obj_new = dev + penalty

        halvings = 0
        while not (obj_new <= obj + tol * (abs(obj) + 0.1)) and np.isfinite(obj):
            if halvings >= max_halving:
                raise PIRLSDivergence(
                    f"Step halving failed to reduce the penalized deviance "
                    f"at iteration {iteration} ({obj_new:.6g} > {obj:.6g})",
                    iterations=iteration,
                    reason='step_halving',
                )
            halvings += 1
            beta_new = 0.5 * (beta + beta_new)
            u_new = [0.5 * (a + b) for a, b in zip(u, u_new)]
            eta_new, mu_new, dev, penalty = _state(system, X, y, wt, family, beta_new, u_new)
            obj_new = dev + penalty

        if not (np.isfinite(obj_new) and np.all(np.isfinite(mu_new))):
            raise PIRLSDivergence(
                f"Non-finite fitted values at iteration {iteration}",
                iterations=iteration,
                reason='nonfinite_mu',
            )

        change = abs(obj - obj_new) / (abs(obj_new) + 0.1) if np.isfinite(obj) else np.inf
        beta, u, eta, mu, obj = beta_new, u_new, eta_new, mu_new, obj_new
        if change < tol:
            converged = True
            break

    if not converged:
        logger.debug("PIRLS did not converge in %d iterations", max_iter)

    return PIRLSResult(
        beta=beta,
        u=u,
        eta=eta,
        mu=mu,
        devresid_sum=dev,
        penalty=penalty,
        logdet=logdet_re(system),
        converged=converged,
        n_iter=iteration,
    )


def supports_agq(system: BlockedSystem) -> bool:
    """AGQ applies to a single scalar random-effects term only."""
    return len(system.reterms) == 1 and system.reterms[0].is_scalar


def agq_from_modes(
    system: BlockedSystem,
    X: NDArray,
    y: NDArray,
    wt: NDArray,
    family: Family,
    result: PIRLSResult,
    n_points: int,
) -> float:
    """Adaptive Gauss-Hermite deviance around PIRLS conditional modes.

    Requires supports_agq(system) and a system factored by the PIRLS call
    that produced result.
    """
    term = system.reterms[0]
    L00 = system.L[0][0]
    if not isinstance(L00, DiagonalBlock):
        raise RuntimeError("AGQ requires a diagonal leading block")
    t = system.factors[0][0, 0]
    fixed_part = X @ result.beta
    z0 = term.z[0]
    link = family.link

    def level_deviance(u: NDArray) -> NDArray:
        eta = fixed_part + t * z0 * u[term.refs]
        mu = link.linkinv(eta)
        devres = wt * family.unit_deviance(y, mu)
        return np.bincount(term.refs, weights=devres, minlength=term.n_levels) + u * u

    sd = 1.0 / L00.d
    return agq_deviance(level_deviance, result.u[0], sd, n_points)
